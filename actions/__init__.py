from __future__ import annotations

from functools import lru_cache
from typing import Any, Callable

from utils import ApiError, AuthContext


Handler = Callable[[dict, "AuthContext | None", Any, Any], Any]


@lru_cache(maxsize=1)
def _handlers() -> dict[str, Handler]:
    # Handler modules import services that import actions.helpers; load them on first dispatch.
    from actions import auth_actions, clearance, feedback, legacy_offboarding, offboarding, settlement

    return {
        "LOGIN_EXCHANGE": auth_actions.login_exchange,
        "SESSION_VALIDATE": auth_actions.session_validate,
        "GET_ME": auth_actions.get_me,
        "MY_PERMISSIONS_GET": auth_actions.my_permissions_get,
        "OFFBOARDING_INITIATE": offboarding.offboarding_initiate,
        "OFFBOARDING_LIST": offboarding.offboarding_list,
        "OFFBOARDING_GET": offboarding.offboarding_get,
        "OFFBOARDING_ADVANCE": offboarding.offboarding_advance,
        "OFFBOARDING_DECIDE": offboarding.offboarding_decide,
        "OFFBOARDING_CLOSE_OR_CANCEL": offboarding.offboarding_close_or_cancel,
        "OFFBOARDING_TASKS_GET": offboarding.offboarding_tasks_get,
        "OFFBOARDING_TASK_UPDATE": offboarding.offboarding_task_update,
        "OFFBOARDING_ANALYTICS": offboarding.offboarding_analytics,
        "OFFBOARDING_OUTBOX_REPLAY": offboarding.offboarding_outbox_replay,
        "OFFBOARDING_CLEARANCE_SET": clearance.offboarding_clearance_set,
        "OFFBOARDING_ASSET_ADD": clearance.offboarding_asset_add,
        "OFFBOARDING_ASSET_UPDATE": clearance.offboarding_asset_update,
        "OFFBOARDING_HANDOVER_ADD": clearance.offboarding_handover_add,
        "OFFBOARDING_HANDOVER_UPDATE": clearance.offboarding_handover_update,
        "OFFBOARDING_SETTLEMENT_GET": settlement.offboarding_settlement_get,
        "OFFBOARDING_SETTLEMENT_PUT": settlement.offboarding_settlement_put,
        "OFFBOARDING_SETTLEMENT_APPROVE": settlement.offboarding_settlement_approve,
        "OFFBOARDING_FEEDBACK_SUBMIT": feedback.offboarding_feedback_submit,
        "OFFBOARDING_FEEDBACK_GET": feedback.offboarding_feedback_get,
        "LEGACY_OFFBOARDING_LIST": legacy_offboarding.legacy_offboarding_list,
        "LEGACY_OFFBOARDING_GET": legacy_offboarding.legacy_offboarding_get,
        "LEGACY_OFFBOARDING_UPDATE": legacy_offboarding.legacy_offboarding_update,
    }


def dispatch(action: str, data: dict, auth: AuthContext | None, db, cfg) -> Any:
    action_u = str(action or "").upper().strip()
    handler = _handlers().get(action_u)
    if handler is None:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action_u}")
    return handler(data or {}, auth, db, cfg)
