"""Boundary handling for NowResult payloads.

Consumers validate before branching: anything malformed degrades to
no_clear_now with a generic explanation instead of raising into the UI.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from loguru import logger

from .algorithms import FeatureStrategies, compute_now, set_intent_action
from .error_handling import BundleFetchError
from .models import (
    HORIZONS, Candidate, Deferred, Future, NoClearNow, NowResult, RecommendedAction,
    ResolvedNow, SignalBundle, parse_timestamp,
)


GENERIC_EXPLANATION = "Couldn't make sense of the current focus. Set an intent to continue."
FETCH_ERROR_EXPLANATION = "Couldn't load your work right now."


def degraded_result(explanation: str = GENERIC_EXPLANATION) -> NoClearNow:
    return NoClearNow(explanation=explanation, fallback_action=set_intent_action())


def _parse_future(data: Dict[str, Any]) -> Future:
    candidate = Candidate.from_dict(data["original_candidate"])
    horizon = data.get("horizon", "next")
    if horizon not in HORIZONS:
        raise ValueError(f"invalid horizon: {horizon!r}")
    return Future(
        id=str(data.get("id", candidate.ref_id)),
        key=str(data.get("key", candidate.key)),
        title=str(data.get("title", candidate.title)),
        confidence=float(data.get("confidence", candidate.confidence)),
        horizon=horizon,
        candidate=candidate,
    )


def _parse(payload: Dict[str, Any]) -> NowResult:
    status = payload.get("status")

    if status == "resolved_now":
        focus = Candidate.from_dict(payload["primary_focus"])
        action = RecommendedAction.from_dict(payload["recommended_action"])
        reasons = payload.get("supporting_reasons")
        if not isinstance(reasons, list) or not reasons:
            raise ValueError("resolved_now requires supporting_reasons")
        return ResolvedNow(
            primary_focus=focus,
            confidence_score=float(payload["confidence_score"]),
            supporting_reasons=[str(r) for r in reasons],
            recommended_action=action,
            futures=[_parse_future(f) for f in payload.get("futures") or []],
        )

    if status == "no_clear_now":
        explanation = payload.get("explanation")
        if not explanation:
            raise ValueError("no_clear_now requires an explanation")
        fallback = payload.get("fallback_action")
        return NoClearNow(
            explanation=str(explanation),
            fallback_action=RecommendedAction.from_dict(fallback) if fallback else None,
        )

    if status == "deferred":
        focus = payload.get("last_known_focus")
        return Deferred(
            cooldown_until=parse_timestamp(payload["cooldown_until"]),
            last_known_focus=Candidate.from_dict(focus) if focus else None,
        )

    raise ValueError(f"unknown status: {status!r}")


def parse_now_result(payload: Any) -> NowResult:
    """
    Validate a serialized NowResult.

    Never raises: malformed payloads come back as a generic no_clear_now.
    """
    if not isinstance(payload, dict):
        logger.warning(f"Malformed now result: expected object, got {type(payload).__name__}")
        return degraded_result()
    try:
        return _parse(payload)
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"Malformed now result ({payload.get('status')!r}): {e}")
        return degraded_result()


def safe_compute_now(
    bundle_payload: Any,
    strategies: Optional[FeatureStrategies] = None
) -> NowResult:
    """
    Parse and compute at the boundary.

    Programmer errors (a malformed bundle, a failing strategy) are logged
    and degraded to no_clear_now.
    """
    try:
        bundle = (
            bundle_payload if isinstance(bundle_payload, SignalBundle)
            else SignalBundle.from_dict(bundle_payload)
        )
        return compute_now(bundle, strategies)
    except Exception:
        logger.exception("Now computation failed; degrading to no_clear_now")
        return degraded_result()


@dataclass
class FetchErrorState:
    """Presentation state for a failed bundle fetch, distinct from no_clear_now."""
    explanation: str
    retry_action: RecommendedAction
    attempts: int = 1

    status = "fetch_error"
    retryable = True

    @classmethod
    def from_error(cls, error: BundleFetchError) -> "FetchErrorState":
        return cls(
            explanation=FETCH_ERROR_EXPLANATION,
            retry_action=RecommendedAction(
                label="Retry",
                action_type="advance",
                payload={"route": "/now", "intent": "retry"},
            ),
            attempts=error.attempts,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "retryable": self.retryable,
            "explanation": self.explanation,
            "retry_action": self.retry_action.to_dict(),
            "attempts": self.attempts,
        }


def describe(result: NowResult) -> str:
    """One-line summary of a result for logs and the CLI."""
    if isinstance(result, ResolvedNow):
        return (
            f"{result.recommended_action.label}: {result.primary_focus.title} "
            f"({result.confidence_score:.0%})"
        )
    if isinstance(result, Deferred):
        return f"Deferred until {result.cooldown_until.isoformat()}"
    if isinstance(result, NoClearNow):
        return result.explanation
    return GENERIC_EXPLANATION
