"""FastAPI JSON service for MoneySeed.

The application exposes the :class:`~moneyseed.service.MoneySeed` facade.  The
caller's identity comes from ``request.session["user_id"]`` or the
``X-User-Id`` header; logging in is handled elsewhere.  Run it with
``uvicorn moneyseed.webapp:app``.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Type

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlmodel import SQLModel
from starlette.middleware.sessions import SessionMiddleware

from ..config import SESSION_SECRET, USER_ID_HEADER
from ..exceptions import (
    BackendUnavailableError,
    BatchInterruptedError,
    ConflictError,
    ImmutableAfterTransferError,
    InsufficientFundsError,
    MoneySeedError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from ..service import MoneySeed

_STATUS_CODES: Dict[Type[MoneySeedError], int] = {
    ValidationError: 422,
    InsufficientFundsError: 422,
    ImmutableAfterTransferError: 409,
    ConflictError: 409,
    NotFoundError: 404,
    PermissionDeniedError: 403,
    BackendUnavailableError: 503,
}


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------
class MissionCreate(SQLModel):
    user_id: Optional[str] = None
    date: Optional[str] = None
    title: str
    reward: int
    category: str
    mission_type: str = "event"
    description: Optional[str] = None


class MissionUpdate(SQLModel):
    date: Optional[str] = None
    title: Optional[str] = None
    reward: Optional[int] = None
    category: Optional[str] = None
    mission_type: Optional[str] = None
    description: Optional[str] = None


class TemplateCreate(SQLModel):
    title: str
    reward: int
    category: str
    mission_type: str = "daily"
    description: Optional[str] = None
    recurring_pattern: Optional[str] = None


class BatchRewardRequest(SQLModel):
    mission_ids: List[str]
    parent_note: Optional[str] = None


class RewardNote(SQLModel):
    parent_note: Optional[str] = None


class StreakSettingsUpdate(SQLModel):
    streak_target_days: Optional[int] = None
    streak_bonus_amount: Optional[int] = None
    streak_repeat: Optional[bool] = None
    streak_enabled: Optional[bool] = None


class ExpenseCreate(SQLModel):
    amount: int
    category: str
    description: Optional[str] = None
    date: Optional[str] = None


# ---------------------------------------------------------------------------
# Dependencies and error handling
# ---------------------------------------------------------------------------
def get_seed(request: Request) -> MoneySeed:
    seed = getattr(request.app.state, "seed", None)
    if seed is None:
        seed = MoneySeed()
        request.app.state.seed = seed
    return seed


def current_user_id(request: Request) -> str:
    user_id = request.session.get("user_id") or request.headers.get(USER_ID_HEADER)
    if not user_id:
        raise HTTPException(status_code=401, detail="Not signed in.")
    return user_id


def _status_for(exc: MoneySeedError) -> int:
    for error_type in type(exc).__mro__:
        if error_type in _STATUS_CODES:
            return _STATUS_CODES[error_type]
    return 400


async def _moneyseed_error_handler(request: Request, exc: MoneySeedError) -> JSONResponse:
    body: Dict[str, object] = {"error": exc.code, "message": str(exc), "retryable": exc.retryable}
    if isinstance(exc, BatchInterruptedError):
        seed = get_seed(request)
        body["partial_result"] = seed.api.batch_result(exc.partial_result)
    return JSONResponse(body, status_code=_status_for(exc))


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------
def create_app(seed: MoneySeed | None = None) -> FastAPI:
    """Build the FastAPI application around ``seed`` (created lazily when omitted)."""

    app = FastAPI(title="MoneySeed")
    app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET, same_site="lax")
    app.state.seed = seed
    app.add_exception_handler(MoneySeedError, _moneyseed_error_handler)

    @app.get("/health")
    def health(seed: MoneySeed = Depends(get_seed)) -> JSONResponse:
        status = seed.health()
        return JSONResponse(status, status_code=200 if status["database"] else 503)

    # Missions ----------------------------------------------------------------
    @app.get("/missions")
    def list_missions(
        date: Optional[str] = Query(default=None),
        user_id: Optional[str] = Query(default=None),
        actor: str = Depends(current_user_id),
        seed: MoneySeed = Depends(get_seed),
    ) -> JSONResponse:
        missions = seed.missions_for_date(actor, date, user_id=user_id)
        return JSONResponse({"missions": seed.api.missions(missions)})

    @app.post("/missions")
    def create_mission(
        body: MissionCreate,
        actor: str = Depends(current_user_id),
        seed: MoneySeed = Depends(get_seed),
    ) -> JSONResponse:
        mission = seed.create_mission(
            actor,
            body.user_id or actor,
            body.date or seed.today(),
            body.title,
            body.reward,
            body.category,
            body.mission_type,
            description=body.description,
        )
        return JSONResponse(seed.api.mission(mission), status_code=201)

    @app.patch("/missions/{mission_id}")
    def update_mission(
        mission_id: str,
        body: MissionUpdate,
        actor: str = Depends(current_user_id),
        seed: MoneySeed = Depends(get_seed),
    ) -> JSONResponse:
        mission = seed.update_mission(actor, mission_id, **body.model_dump(exclude_unset=True))
        return JSONResponse(seed.api.mission(mission))

    @app.delete("/missions/{mission_id}")
    def delete_mission(
        mission_id: str,
        actor: str = Depends(current_user_id),
        seed: MoneySeed = Depends(get_seed),
    ) -> JSONResponse:
        seed.delete_mission(actor, mission_id)
        return JSONResponse({"deleted": mission_id})

    @app.post("/missions/{mission_id}/complete")
    def complete_mission(
        mission_id: str,
        actor: str = Depends(current_user_id),
        seed: MoneySeed = Depends(get_seed),
    ) -> JSONResponse:
        mission, streak = seed.complete_mission(actor, mission_id)
        return JSONResponse({"mission": seed.api.mission(mission), "streak": seed.api.streak_result(streak)})

    @app.post("/missions/{mission_id}/uncomplete")
    def uncomplete_mission(
        mission_id: str,
        actor: str = Depends(current_user_id),
        seed: MoneySeed = Depends(get_seed),
    ) -> JSONResponse:
        mission = seed.uncomplete_mission(actor, mission_id)
        return JSONResponse(seed.api.mission(mission))

    # Templates ---------------------------------------------------------------
    @app.get("/templates")
    def list_templates(
        include_inactive: bool = Query(default=False),
        actor: str = Depends(current_user_id),
        seed: MoneySeed = Depends(get_seed),
    ) -> JSONResponse:
        templates = seed.list_templates(actor, include_inactive=include_inactive)
        return JSONResponse({"templates": [seed.api.template(item) for item in templates]})

    @app.post("/templates")
    def create_template(
        body: TemplateCreate,
        actor: str = Depends(current_user_id),
        seed: MoneySeed = Depends(get_seed),
    ) -> JSONResponse:
        template = seed.create_template(
            actor,
            body.title,
            body.reward,
            body.category,
            body.mission_type,
            description=body.description,
            recurring_pattern=body.recurring_pattern,
        )
        return JSONResponse(seed.api.template(template), status_code=201)

    @app.post("/templates/{template_id}/deactivate")
    def deactivate_template(
        template_id: str,
        actor: str = Depends(current_user_id),
        seed: MoneySeed = Depends(get_seed),
    ) -> JSONResponse:
        return JSONResponse(seed.api.template(seed.deactivate_template(actor, template_id)))

    # Rewards -----------------------------------------------------------------
    @app.get("/rewards/pending")
    def pending_rewards(
        actor: str = Depends(current_user_id),
        seed: MoneySeed = Depends(get_seed),
    ) -> JSONResponse:
        missions = seed.pending_rewards(actor)
        return JSONResponse(
            {
                "missions": [seed.api.pending_mission(item) for item in missions],
                "smart_selection": seed.settlement.get_smart_selection(missions),
            }
        )

    @app.get("/rewards/summary")
    def reward_summary(
        actor: str = Depends(current_user_id),
        seed: MoneySeed = Depends(get_seed),
    ) -> JSONResponse:
        return JSONResponse(seed.api.reward_summary(seed.reward_summary(actor)))

    @app.get("/rewards/grouped")
    def grouped_rewards(
        actor: str = Depends(current_user_id),
        seed: MoneySeed = Depends(get_seed),
    ) -> JSONResponse:
        return JSONResponse(seed.api.grouped_missions(seed.grouped_rewards(actor)))

    @app.post("/rewards/batch")
    def settle_batch(
        body: BatchRewardRequest,
        actor: str = Depends(current_user_id),
        seed: MoneySeed = Depends(get_seed),
    ) -> JSONResponse:
        result = seed.settle_rewards(actor, body.mission_ids, body.parent_note)
        return JSONResponse(seed.api.batch_result(result))

    @app.post("/rewards/{mission_id}")
    def settle_single(
        mission_id: str,
        body: Optional[RewardNote] = None,
        actor: str = Depends(current_user_id),
        seed: MoneySeed = Depends(get_seed),
    ) -> JSONResponse:
        note = body.parent_note if body is not None else None
        return JSONResponse(seed.api.batch_result(seed.settle_reward(actor, mission_id, note)))

    # Child-side settlement ---------------------------------------------------
    @app.get("/settlements/pending")
    def pending_settlements(
        actor: str = Depends(current_user_id),
        seed: MoneySeed = Depends(get_seed),
    ) -> JSONResponse:
        return JSONResponse(seed.api.pending_settlement(seed.pending_settlements(actor)))

    @app.get("/settlements/auto-check")
    def auto_settlement_check(
        actor: str = Depends(current_user_id),
        seed: MoneySeed = Depends(get_seed),
    ) -> JSONResponse:
        return JSONResponse(seed.api.auto_settlement(seed.auto_settlement_check(actor)))

    @app.post("/settlements/request")
    def request_settlement(
        actor: str = Depends(current_user_id),
        seed: MoneySeed = Depends(get_seed),
    ) -> JSONResponse:
        return JSONResponse(seed.api.settlement_request(seed.request_settlement(actor)))

    # Streaks -----------------------------------------------------------------
    @app.get("/streak")
    def streak(
        user_id: Optional[str] = Query(default=None),
        actor: str = Depends(current_user_id),
        seed: MoneySeed = Depends(get_seed),
    ) -> JSONResponse:
        return JSONResponse(
            {
                "progress": seed.api.streak_progress(seed.streak_progress(actor, user_id)),
                "settings": seed.api.streak_settings(seed.streak_settings(actor, user_id)),
            }
        )

    @app.post("/streak/reset/{user_id}")
    def reset_streak(
        user_id: str,
        actor: str = Depends(current_user_id),
        seed: MoneySeed = Depends(get_seed),
    ) -> JSONResponse:
        return JSONResponse(seed.api.streak_progress(seed.reset_streak(actor, user_id)))

    @app.put("/streak/settings/{user_id}")
    def update_streak_settings(
        user_id: str,
        body: StreakSettingsUpdate,
        actor: str = Depends(current_user_id),
        seed: MoneySeed = Depends(get_seed),
    ) -> JSONResponse:
        settings = seed.update_streak_settings(actor, user_id, **body.model_dump(exclude_unset=True))
        return JSONResponse(seed.api.streak_settings(settings))

    @app.post("/streak/bonuses/{milestone_id}/claim")
    def claim_streak_bonus(
        milestone_id: str,
        actor: str = Depends(current_user_id),
        seed: MoneySeed = Depends(get_seed),
    ) -> JSONResponse:
        return JSONResponse(seed.api.reward_history(seed.claim_streak_bonus(actor, milestone_id)))

    @app.get("/streak/verify/{user_id}")
    def verify_streak(
        user_id: str,
        actor: str = Depends(current_user_id),
        seed: MoneySeed = Depends(get_seed),
    ) -> JSONResponse:
        return JSONResponse(seed.api.system_status(seed.verify_streak(actor, user_id)))

    # Allowance ---------------------------------------------------------------
    @app.get("/allowance/balance")
    def allowance_balance(
        user_id: Optional[str] = Query(default=None),
        actor: str = Depends(current_user_id),
        seed: MoneySeed = Depends(get_seed),
    ) -> JSONResponse:
        target = user_id or actor
        return JSONResponse({"user_id": target, "balance": seed.balance(actor, target)})

    @app.get("/allowance/statistics")
    def allowance_statistics(
        user_id: Optional[str] = Query(default=None),
        period: str = Query(default="month"),
        actor: str = Depends(current_user_id),
        seed: MoneySeed = Depends(get_seed),
    ) -> JSONResponse:
        return JSONResponse(seed.api.statistics(seed.statistics(actor, user_id, period)))

    @app.post("/allowance/expenses")
    def add_expense(
        body: ExpenseCreate,
        actor: str = Depends(current_user_id),
        seed: MoneySeed = Depends(get_seed),
    ) -> JSONResponse:
        transaction = seed.add_expense(actor, body.amount, body.category, body.description, body.date)
        return JSONResponse(seed.api.transaction(transaction), status_code=201)

    return app


app = create_app()

__all__ = ["app", "create_app", "current_user_id", "get_seed"]
