"""
Progress Controllers Module

This module provides API endpoints the UI layer uses to drive the progress
engine, including:
- Reading progress, quests, hearts and review queues
- Completing lessons and practice sessions
- Shop purchases, streak remediation, quest claims and the loot chest

The engine is owned by the application (``app.state.engine``) and handed to
each endpoint through a dependency.
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field

from pharmalingo.common.error_handling import ErrorCode, PharmaLingoError, error_response, log_error
from pharmalingo.common.logger import app_logger
from pharmalingo.progress.engine import ProgressEngine
from pharmalingo.progress.models import Answer

# Set up module logger
logger = app_logger.getChild("progress.controllers")

# Create router
router = APIRouter(prefix="/progress", tags=["Progress"])

STATUS_BY_CODE = {
    ErrorCode.INSUFFICIENT_HEARTS: 409,
    ErrorCode.INSUFFICIENT_COINS: 409,
    ErrorCode.NO_STREAK_SAVE_AVAILABLE: 409,
    ErrorCode.ALREADY_CLAIMED: 409,
    ErrorCode.QUEST_NOT_COMPLETED: 409,
    ErrorCode.STREAK_NOT_PENDING: 409,
    ErrorCode.STREAK_SAVE_LIMIT: 409,
    ErrorCode.HEARTS_ALREADY_FULL: 409,
    ErrorCode.UNKNOWN_QUEST: 404,
    ErrorCode.UNKNOWN_ITEM: 404,
    ErrorCode.NOT_INITIALIZED: 503,
    ErrorCode.PERSISTENCE_FAILURE: 503,
    ErrorCode.EXTERNAL_SERVICE_ERROR: 502,
}


def get_engine(request: Request) -> ProgressEngine:
    """Engine owned by the running application"""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Progress engine is not configured")
    return engine


def to_http_error(error: PharmaLingoError) -> HTTPException:
    status_code = STATUS_BY_CODE.get(error.code, 400)
    if status_code >= 500:
        log_error(error)
    return HTTPException(status_code=status_code, detail=error_response(error))


# Request models
class AnswerRequest(BaseModel):
    is_correct: bool = Field(..., description="Whether the answer was correct")
    drug_id: Optional[str] = Field(None, description="Drug the question was about")
    concept_id: Optional[str] = Field(None, description="Concept the question tested")
    question_type: str = Field("multiple_choice", description="Question type")

    def to_answer(self) -> Answer:
        return Answer(
            is_correct=self.is_correct,
            drug_id=self.drug_id,
            concept_id=self.concept_id,
            question_type=self.question_type,
        )


class LessonCompleteRequest(BaseModel):
    answers: List[AnswerRequest] = Field(default_factory=list, description="Answers given in the lesson")
    score: Optional[int] = Field(None, ge=0, le=100, description="Score percent override")


class PracticeCompleteRequest(BaseModel):
    answers: List[AnswerRequest] = Field(default_factory=list, description="Answers given in the session")
    review_mistakes: bool = Field(False, description="Whether this was a mistake review session")


class RemindersRequest(BaseModel):
    enabled: bool = Field(..., description="Whether reminders are enabled")


class SchoolRequest(BaseModel):
    school_id: Optional[str] = Field(None, description="Selected school ID")
    school_name: Optional[str] = Field(None, description="Selected school name")


# Response models
class SummaryResponse(BaseModel):
    hearts: int = Field(..., description="Hearts available now")
    hearts_max: int = Field(..., description="Heart capacity")
    heart_countdown_seconds: int = Field(..., description="Seconds until the next heart")
    coins: int = Field(..., description="Coin balance")
    xp_total: int = Field(..., description="Lifetime XP")
    level: int = Field(..., description="Current level")
    streak: int = Field(..., description="Streak to display")
    streak_state: str = Field(..., description="Streak state for today")
    streak_saves: int = Field(..., description="Streak saves held")
    accuracy: int = Field(..., description="Lifetime accuracy percent")
    league_tier: str = Field(..., description="Current league tier")
    double_xp_next_lesson: bool = Field(..., description="Whether the next lesson earns double XP")


class ReviewResponse(BaseModel):
    due: List[str] = Field(..., description="Drugs due for review, weakest first")
    low_mastery: List[str] = Field(..., description="Drugs below the low-mastery level")
    recent_mistakes: List[str] = Field(..., description="Drugs with recent mistakes")


@router.get("")
async def get_progress(engine: ProgressEngine = Depends(get_engine)) -> Dict[str, Any]:
    """Full progress document"""
    try:
        return engine.progress.to_dict()
    except PharmaLingoError as e:
        raise to_http_error(e)


@router.get("/summary", response_model=SummaryResponse)
async def get_summary(engine: ProgressEngine = Depends(get_engine)) -> Dict[str, Any]:
    """
    Header summary for the main screen.

    Returns:
        Hearts, coins, XP, streak and league at a glance
    """
    try:
        stats = engine.progress.stats
        return {
            "hearts": engine.current_hearts(),
            "hearts_max": stats.hearts_max,
            "heart_countdown_seconds": engine.heart_countdown_seconds(),
            "coins": stats.coins,
            "xp_total": stats.xp_total,
            "level": engine.progress.level,
            "streak": engine.effective_streak,
            "streak_state": engine.streak_state.value,
            "streak_saves": stats.streak_saves,
            "accuracy": engine.accuracy,
            "league_tier": stats.league_tier,
            "double_xp_next_lesson": stats.double_xp_next_lesson,
        }
    except PharmaLingoError as e:
        raise to_http_error(e)


@router.post("/lessons/{lesson_id}/complete")
async def complete_lesson(
    lesson_id: str,
    body: LessonCompleteRequest,
    engine: ProgressEngine = Depends(get_engine)
) -> Dict[str, Any]:
    try:
        result = await engine.complete_lesson(lesson_id, [a.to_answer() for a in body.answers], score=body.score)
        return result.to_dict()
    except PharmaLingoError as e:
        raise to_http_error(e)


@router.post("/practice/complete")
async def complete_practice(
    body: PracticeCompleteRequest,
    engine: ProgressEngine = Depends(get_engine)
) -> Dict[str, Any]:
    try:
        result = await engine.complete_practice(
            [a.to_answer() for a in body.answers], review_mistakes=body.review_mistakes
        )
        return result.to_dict()
    except PharmaLingoError as e:
        raise to_http_error(e)


@router.post("/hearts/consume")
async def consume_heart(engine: ProgressEngine = Depends(get_engine)) -> Dict[str, Any]:
    try:
        return {"hearts": await engine.consume_heart()}
    except PharmaLingoError as e:
        raise to_http_error(e)


@router.post("/hearts/reward")
async def add_heart(engine: ProgressEngine = Depends(get_engine)) -> Dict[str, Any]:
    try:
        return {"hearts": await engine.add_heart()}
    except PharmaLingoError as e:
        raise to_http_error(e)


@router.post("/shop/{item}")
async def buy_item(item: str, engine: ProgressEngine = Depends(get_engine)) -> Dict[str, Any]:
    """
    Buy a shop item.

    Args:
        item: ``heart``, ``full_refill`` or ``streak_save``
    """
    try:
        await engine.buy_item(item)
        stats = engine.progress.stats
        return {"coins": stats.coins, "hearts": stats.hearts, "streak_saves": stats.streak_saves}
    except PharmaLingoError as e:
        raise to_http_error(e)


@router.get("/quests")
async def get_daily_quests(engine: ProgressEngine = Depends(get_engine)) -> List[Dict[str, Any]]:
    try:
        return [quest.to_dict() for quest in engine.daily_quests()]
    except PharmaLingoError as e:
        raise to_http_error(e)


@router.post("/quests/{slot}/claim")
async def claim_daily_quest(slot: int, engine: ProgressEngine = Depends(get_engine)) -> Dict[str, Any]:
    try:
        reward = await engine.claim_daily_quest(slot)
        return {"slot": slot, "reward": reward, "coins": engine.progress.stats.coins}
    except PharmaLingoError as e:
        raise to_http_error(e)


@router.post("/streak/save")
async def use_streak_save(engine: ProgressEngine = Depends(get_engine)) -> Dict[str, Any]:
    try:
        remaining = await engine.use_streak_save()
        return {"streak": engine.progress.stats.streak_current, "streak_saves": remaining}
    except PharmaLingoError as e:
        raise to_http_error(e)


@router.post("/streak/buy-save")
async def buy_streak_save(engine: ProgressEngine = Depends(get_engine)) -> Dict[str, Any]:
    try:
        held = await engine.buy_streak_save()
        return {"streak_saves": held, "coins": engine.progress.stats.coins}
    except PharmaLingoError as e:
        raise to_http_error(e)


@router.post("/streak/accept-break")
async def accept_streak_break(engine: ProgressEngine = Depends(get_engine)) -> Dict[str, Any]:
    try:
        await engine.accept_streak_break()
        return {"streak": engine.progress.stats.streak_current}
    except PharmaLingoError as e:
        raise to_http_error(e)


@router.post("/loot")
async def open_loot_box(engine: ProgressEngine = Depends(get_engine)) -> Dict[str, Any]:
    try:
        reward = await engine.open_loot_box()
        return reward.to_dict()
    except PharmaLingoError as e:
        raise to_http_error(e)


@router.get("/league/result")
async def get_league_result(engine: ProgressEngine = Depends(get_engine)) -> Optional[Dict[str, Any]]:
    """Result of the last closed league week, or null"""
    result = engine.league_week_result
    return result.to_dict() if result else None


@router.delete("/league/result")
async def dismiss_league_result(engine: ProgressEngine = Depends(get_engine)) -> Dict[str, Any]:
    engine.dismiss_league_result()
    return {"status": "dismissed"}


@router.get("/review", response_model=ReviewResponse)
async def get_review_queues(
    days: int = Query(7, ge=1, le=90, description="Window for recent mistakes"),
    engine: ProgressEngine = Depends(get_engine)
) -> Dict[str, Any]:
    try:
        return {
            "due": engine.due_for_review(),
            "low_mastery": engine.low_mastery(),
            "recent_mistakes": engine.recent_mistake_drug_ids(days),
        }
    except PharmaLingoError as e:
        raise to_http_error(e)


@router.get("/notifications")
async def get_notification_state(engine: ProgressEngine = Depends(get_engine)) -> Dict[str, Any]:
    try:
        return engine.notification_state().to_dict()
    except PharmaLingoError as e:
        raise to_http_error(e)


@router.put("/reminders")
async def set_reminders(body: RemindersRequest, engine: ProgressEngine = Depends(get_engine)) -> Dict[str, Any]:
    try:
        return {"reminders_enabled": await engine.set_reminders_enabled(body.enabled)}
    except PharmaLingoError as e:
        raise to_http_error(e)


@router.put("/school")
async def select_school(body: SchoolRequest, engine: ProgressEngine = Depends(get_engine)) -> Dict[str, Any]:
    try:
        await engine.select_school(body.school_id, body.school_name)
        stats = engine.progress.stats
        return {"school_id": stats.selected_school_id, "school_name": stats.selected_school_name}
    except PharmaLingoError as e:
        raise to_http_error(e)



def create_app(engine: ProgressEngine, user_id: Optional[str] = None) -> FastAPI:
    """
    Build an application serving the progress endpoints for ``engine``.

    Args:
        engine: Progress engine owned by the application
        user_id: Learner to load on startup; when omitted the engine must
            already be initialized

    Returns:
        FastAPI application
    """
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if user_id is not None:
            await engine.init(user_id)
        logger.info("Progress API started")
        yield
        if not await engine.teardown():
            logger.warning("Progress API stopped with unsaved changes")

    app = FastAPI(title="PharmaLingo Progress", lifespan=lifespan)
    app.state.engine = engine
    app.include_router(router)
    return app
