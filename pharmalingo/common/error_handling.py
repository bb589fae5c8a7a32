"""
Error Handling for the Progress Engine

This module provides:
1. The exception hierarchy raised by engine operations
2. A retry decorator with exponential backoff for persistence calls
3. Structured error responses and logging helpers

Every engine rejection (not enough coins, quest already claimed, ...) is raised
before any state is mutated, so callers can surface it without rolling back.
"""

import random
import asyncio
import logging
import functools
from enum import Enum
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple, Type, TypeVar, Union, cast

from pydantic import BaseModel, ConfigDict, Field

F = TypeVar('F', bound=Callable)

logger = logging.getLogger("pharmalingo.errors")


class ErrorSeverity(Enum):
    """Severity levels for errors"""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCode(Enum):
    """Standard error codes for the progress engine"""
    UNKNOWN_ERROR = "unknown_error"

    # Economy / consumables
    INSUFFICIENT_HEARTS = "insufficient_hearts"
    INSUFFICIENT_COINS = "insufficient_coins"
    NO_STREAK_SAVE_AVAILABLE = "no_streak_save_available"

    # Idempotence guards
    ALREADY_CLAIMED = "already_claimed"
    QUEST_NOT_COMPLETED = "quest_not_completed"

    # Invalid operations
    STREAK_NOT_PENDING = "streak_not_pending"
    STREAK_SAVE_LIMIT = "streak_save_limit"
    HEARTS_ALREADY_FULL = "hearts_already_full"
    UNKNOWN_QUEST = "unknown_quest"
    UNKNOWN_ITEM = "unknown_item"
    NOT_INITIALIZED = "not_initialized"

    # Infrastructure
    PERSISTENCE_FAILURE = "persistence_failure"
    EXTERNAL_SERVICE_ERROR = "external_service_error"


class ErrorInfo(BaseModel):
    """Structured information about an error"""
    model_config = ConfigDict(use_enum_values=True)

    code: ErrorCode
    message: str
    timestamp: datetime = Field(default_factory=datetime.now)
    severity: ErrorSeverity = ErrorSeverity.ERROR
    details: Optional[Dict[str, Any]] = None
    exception_type: Optional[str] = None


class PharmaLingoError(Exception):
    """Base exception class for all engine errors"""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.severity = severity
        self.details = details or {}
        self.cause = cause
        self.timestamp = datetime.now()

    def to_error_info(self) -> ErrorInfo:
        """Convert the exception to an ErrorInfo object"""
        details = dict(self.details)
        if self.cause is not None:
            details["cause"] = {
                "type": type(self.cause).__name__,
                "message": str(self.cause)
            }

        return ErrorInfo(
            code=self.code,
            message=self.message,
            timestamp=self.timestamp,
            severity=self.severity,
            details=details,
            exception_type=type(self).__name__
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert the exception to a dictionary"""
        return self.to_error_info().model_dump(mode="json")

    def __str__(self) -> str:
        base_str = f"{self.code.value}: {self.message}"
        if self.details:
            base_str += f" (details: {self.details})"
        if self.cause:
            base_str += f" caused by {type(self.cause).__name__}: {self.cause}"
        return base_str


# Consumable resources

class InsufficientResource(PharmaLingoError):
    """A consumable (hearts, coins, streak saves) is not available"""

    def __init__(
        self,
        message: str,
        resource: str,
        required: int,
        available: int,
        code: ErrorCode
    ):
        super().__init__(
            message=message,
            code=code,
            severity=ErrorSeverity.WARNING,
            details={"resource": resource, "required": required, "available": available}
        )
        self.resource = resource
        self.required = required
        self.available = available


class InsufficientHearts(InsufficientResource):
    """No heart is left to start a lesson"""

    def __init__(self, available: int = 0):
        super().__init__(
            "No hearts left",
            resource="hearts",
            required=1,
            available=available,
            code=ErrorCode.INSUFFICIENT_HEARTS
        )


class InsufficientCoins(InsufficientResource):
    """The learner cannot afford a purchase"""

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Need {required} coins, have {available}",
            resource="coins",
            required=required,
            available=available,
            code=ErrorCode.INSUFFICIENT_COINS
        )


class NoStreakSaveAvailable(InsufficientResource):
    """A streak save was requested with no token in stock"""

    def __init__(self):
        super().__init__(
            "No streak save available",
            resource="streak_saves",
            required=1,
            available=0,
            code=ErrorCode.NO_STREAK_SAVE_AVAILABLE
        )


# Idempotence guards

class AlreadyClaimed(PharmaLingoError):
    """A one-time reward was already collected"""

    def __init__(self, message: str = "Reward already claimed", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            code=ErrorCode.ALREADY_CLAIMED,
            severity=ErrorSeverity.INFO,
            details=details
        )


class LootAlreadyOpened(AlreadyClaimed):
    """Today's loot chest was already opened"""

    def __init__(self, last_loot_date: Any = None):
        super().__init__(
            "Loot chest already opened today",
            details={"last_loot_date": str(last_loot_date)} if last_loot_date else None
        )


class QuestNotCompleted(PharmaLingoError):
    """A daily quest was claimed before reaching its target"""

    def __init__(self, slot: int, current: int, target: int):
        super().__init__(
            message=f"Quest {slot} not completed ({current}/{target})",
            code=ErrorCode.QUEST_NOT_COMPLETED,
            severity=ErrorSeverity.INFO,
            details={"slot": slot, "current": current, "target": target}
        )


# Invalid operations

class StreakNotPending(PharmaLingoError):
    """Streak remediation was requested while no break is pending"""

    def __init__(self, state: str):
        super().__init__(
            message="No streak break is pending",
            code=ErrorCode.STREAK_NOT_PENDING,
            severity=ErrorSeverity.INFO,
            details={"state": state}
        )


class StreakSaveLimitReached(PharmaLingoError):
    """The learner already holds the maximum number of streak saves"""

    def __init__(self, held: int, limit: int):
        super().__init__(
            message=f"Already holding {held}/{limit} streak saves",
            code=ErrorCode.STREAK_SAVE_LIMIT,
            severity=ErrorSeverity.INFO,
            details={"held": held, "limit": limit}
        )


class HeartsAlreadyFull(PharmaLingoError):
    """A heart purchase was requested with hearts already at max"""

    def __init__(self, hearts_max: int):
        super().__init__(
            message="Hearts are already full",
            code=ErrorCode.HEARTS_ALREADY_FULL,
            severity=ErrorSeverity.INFO,
            details={"hearts_max": hearts_max}
        )


class UnknownQuestSlot(PharmaLingoError):
    """The requested daily quest slot does not exist"""

    def __init__(self, slot: Any):
        super().__init__(
            message=f"Unknown daily quest slot: {slot}",
            code=ErrorCode.UNKNOWN_QUEST,
            severity=ErrorSeverity.WARNING,
            details={"slot": slot}
        )


class UnknownItem(PharmaLingoError):
    """The requested shop item does not exist"""

    def __init__(self, kind: Any):
        super().__init__(
            message=f"Unknown shop item: {kind}",
            code=ErrorCode.UNKNOWN_ITEM,
            severity=ErrorSeverity.WARNING,
            details={"kind": str(kind)}
        )


class EngineNotInitialized(PharmaLingoError):
    """An operation was attempted before init() or after teardown()"""

    def __init__(self):
        super().__init__(
            message="Progress engine is not initialized",
            code=ErrorCode.NOT_INITIALIZED,
            severity=ErrorSeverity.ERROR
        )


# Infrastructure

class PersistenceFailure(PharmaLingoError):
    """A durable read or write did not complete"""

    def __init__(self, message: str, user_id: Optional[str] = None, cause: Optional[Exception] = None):
        super().__init__(
            message=message,
            code=ErrorCode.PERSISTENCE_FAILURE,
            severity=ErrorSeverity.ERROR,
            details={"user_id": user_id} if user_id else None,
            cause=cause
        )
        self.user_id = user_id


class ExternalServiceError(PharmaLingoError):
    """A collaborator (server streak status, leaderboard) failed"""

    def __init__(self, service: str, cause: Optional[Exception] = None):
        super().__init__(
            message=f"{service} unavailable",
            code=ErrorCode.EXTERNAL_SERVICE_ERROR,
            severity=ErrorSeverity.WARNING,
            details={"service": service},
            cause=cause
        )
        self.service = service


def convert_exception(exception: Exception) -> PharmaLingoError:
    """Wrap a foreign exception into the engine hierarchy."""
    if isinstance(exception, PharmaLingoError):
        return exception
    return PharmaLingoError(
        message=str(exception) or type(exception).__name__,
        cause=exception
    )


def retry(
    max_retries: int = 3,
    retry_delay: float = 1.0,
    backoff_factor: float = 2.0,
    jitter: float = 0.1,
    retry_exceptions: Tuple[Type[Exception], ...] = (Exception,)
):
    """
    Decorator for retrying a coroutine when it raises.

    Args:
        max_retries: Maximum number of retries after the first attempt
        retry_delay: Initial delay between retries in seconds
        backoff_factor: Factor to increase delay with each retry
        jitter: Random jitter factor to add to delay
        retry_exceptions: Tuple of exception types to retry on

    Returns:
        Decorated coroutine function
    """
    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            retries = 0
            delay = retry_delay
            while True:
                try:
                    return await func(*args, **kwargs)
                except retry_exceptions as e:
                    retries += 1
                    if retries > max_retries:
                        raise
                    actual_delay = delay * (1 + random.uniform(-jitter, jitter))
                    logger.warning(
                        f"Retry {retries}/{max_retries} for {func.__name__} "
                        f"after {actual_delay:.2f}s due to {type(e).__name__}: {e}"
                    )
                    await asyncio.sleep(actual_delay)
                    delay *= backoff_factor

        return cast(F, wrapper)

    return decorator


def error_response(
    error: Union[PharmaLingoError, Exception],
    include_details: bool = True
) -> Dict[str, Any]:
    """
    Generate a standardized API error response.

    Args:
        error: The error to generate a response for
        include_details: Whether to include error details

    Returns:
        Standardized error response dictionary
    """
    error = convert_exception(error)
    error_info = error.to_error_info()

    response = {
        "status": "error",
        "code": error_info.code,
        "message": error_info.message
    }

    if include_details and error_info.details:
        response["details"] = error_info.details

    return response


def log_error(
    error: Union[PharmaLingoError, Exception],
    level: Optional[int] = None,
    context: Optional[Dict[str, Any]] = None
) -> None:
    """
    Log an error with standardized format.

    Args:
        error: The error to log
        level: Logging level; derived from the error severity when omitted
        context: Additional context to include
    """
    error = convert_exception(error)

    if level is None:
        level = getattr(logging, error.severity.value.upper(), logging.ERROR)

    message = f"[{error.code.value}] {error.message}"
    if context:
        message += " (context: " + ", ".join(f"{k}={v}" for k, v in context.items()) + ")"
    if error.cause:
        message += f" caused by {type(error.cause).__name__}: {error.cause}"

    logger.log(level, message)
