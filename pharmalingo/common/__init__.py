"""
Common Components for PharmaLingo

Infrastructure shared by the progress engine:
1. Logging - Centralized logging configuration
2. Error Handling - Exception hierarchy, retry and error responses
3. Serialization - Record <-> JSON conversion
4. Configuration - Tunable product numbers
5. Clock - Injectable time source
"""

from pharmalingo.common.logger import app_logger
