"""Data model for the Now engine: signal bundle, candidates, actions, results."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from .error_handling import MalformedBundleError


# User event types
DEFER_NOW = "DEFER_NOW"
OVERRIDE_NOW = "OVERRIDE_NOW"
EXECUTED_ACTION = "EXECUTED_ACTION"
USER_EVENT_TYPES = (DEFER_NOW, OVERRIDE_NOW, EXECUTED_ACTION)

# Candidate kinds
KIND_ACTION = "action"
KIND_DECISION = "decision"
KIND_BLOCKER = "blocker"
KIND_SESSION = "session"
CANDIDATE_KINDS = (KIND_ACTION, KIND_DECISION, KIND_BLOCKER, KIND_SESSION)

ACTION_TYPES = ("resolve", "advance", "decide", "defer")
HORIZONS = ("next", "later")

Timestamp = Union[datetime, str, int, float]


def parse_timestamp(value: Timestamp) -> datetime:
    """
    Normalize a timestamp to an aware UTC datetime.

    Accepts datetimes (naive values are taken as UTC), ISO-8601 strings
    and epoch milliseconds.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        try:
            dt = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError) as e:
            raise ValueError(f"Timestamp out of range: {value!r}") from e
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Render a UTC datetime as ISO-8601 with a Z suffix."""
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _optional_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    return parse_timestamp(value)


@dataclass(frozen=True)
class WorkItem:
    """One open work item as supplied by the caller-side adapter."""
    id: str
    title: str
    status: str
    priority: Optional[Union[str, int]] = None
    project: Optional[str] = None
    due_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkItem":
        if not isinstance(data, dict):
            raise MalformedBundleError(f"work item must be an object, got {type(data).__name__}")
        if data.get("id") is None:
            raise MalformedBundleError("work item is missing 'id'")
        try:
            return cls(
                id=str(data["id"]),
                title=str(data.get("title") or ""),
                status=str(data.get("status") or ""),
                priority=data.get("priority"),
                project=data.get("project"),
                due_at=_optional_timestamp(data.get("due_at")),
                updated_at=_optional_timestamp(data.get("updated_at")),
            )
        except ValueError as e:
            raise MalformedBundleError(f"work item {data.get('id')}: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status,
            "priority": self.priority,
            "project": self.project,
            "due_at": format_timestamp(self.due_at) if self.due_at else None,
            "updated_at": format_timestamp(self.updated_at) if self.updated_at else None,
        }


@dataclass(frozen=True)
class UserEvent:
    """An explicit user signal: defer, override (wake) or executed action."""
    type: str
    timestamp: datetime
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserEvent":
        if not isinstance(data, dict) or data.get("type") not in USER_EVENT_TYPES:
            raise MalformedBundleError(f"invalid user event: {data!r}")
        try:
            timestamp = parse_timestamp(data.get("timestamp"))
        except ValueError as e:
            raise MalformedBundleError(f"user event {data['type']}: {e}") from e
        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            raise MalformedBundleError(f"user event {data['type']}: payload must be an object")
        return cls(type=data["type"], timestamp=timestamp, payload=payload)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "timestamp": format_timestamp(self.timestamp),
            "payload": self.payload,
        }


@dataclass(frozen=True)
class IgnoredCandidate:
    """Dismissal counter for one candidate key."""
    key: str
    count: int

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IgnoredCandidate":
        try:
            return cls(key=str(data["key"]), count=int(data.get("count", 0)))
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedBundleError(f"invalid ignored candidate: {data!r}") from e

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "count": self.count}


@dataclass(frozen=True)
class SignalBundle:
    """Immutable snapshot of everything the engine may reason about."""
    now: datetime
    actions: Tuple[WorkItem, ...] = ()
    decisions: Tuple[WorkItem, ...] = ()
    blockers: Tuple[WorkItem, ...] = ()
    sessions: Tuple[WorkItem, ...] = ()
    user_events: Tuple[UserEvent, ...] = ()
    ignored_candidates: Tuple[IgnoredCandidate, ...] = ()

    def items_for(self, kind: str) -> Tuple[WorkItem, ...]:
        """Return the collection backing a candidate kind."""
        return {
            KIND_ACTION: self.actions,
            KIND_DECISION: self.decisions,
            KIND_BLOCKER: self.blockers,
            KIND_SESSION: self.sessions,
        }.get(kind, ())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SignalBundle":
        """
        Build a bundle from its JSON shape.

        Raises:
            MalformedBundleError: if a required field is missing or invalid
        """
        if not isinstance(data, dict):
            raise MalformedBundleError("bundle must be a JSON object")
        if data.get("now") is None:
            raise MalformedBundleError("bundle is missing 'now'")
        try:
            now = parse_timestamp(data["now"])
        except ValueError as e:
            raise MalformedBundleError(f"bundle 'now': {e}") from e

        def collection(name: str) -> list:
            value = data.get(name) or []
            if not isinstance(value, list):
                raise MalformedBundleError(f"bundle '{name}' must be a list")
            return value

        return cls(
            now=now,
            actions=tuple(WorkItem.from_dict(i) for i in collection("actions")),
            decisions=tuple(WorkItem.from_dict(i) for i in collection("decisions")),
            blockers=tuple(WorkItem.from_dict(i) for i in collection("blockers")),
            sessions=tuple(WorkItem.from_dict(i) for i in collection("sessions")),
            user_events=tuple(UserEvent.from_dict(e) for e in collection("user_events")),
            ignored_candidates=tuple(
                IgnoredCandidate.from_dict(i) for i in collection("ignored_candidates")
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "now": format_timestamp(self.now),
            "actions": [i.to_dict() for i in self.actions],
            "decisions": [i.to_dict() for i in self.decisions],
            "blockers": [i.to_dict() for i in self.blockers],
            "sessions": [i.to_dict() for i in self.sessions],
            "user_events": [e.to_dict() for e in self.user_events],
            "ignored_candidates": [i.to_dict() for i in self.ignored_candidates],
        }


@dataclass
class RecommendedAction:
    """Concrete next step attached to a candidate; opaque to the engine."""
    label: str
    action_type: str  # resolve|advance|decide|defer
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecommendedAction":
        if not isinstance(data, dict) or not data.get("label"):
            raise ValueError("recommended action requires a label")
        if data.get("action_type") not in ACTION_TYPES:
            raise ValueError(f"invalid action_type: {data.get('action_type')!r}")
        return cls(
            label=str(data["label"]),
            action_type=data["action_type"],
            payload=dict(data.get("payload") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "action_type": self.action_type,
            "payload": dict(self.payload),
        }


@dataclass
class Features:
    """The five normalized scoring features of a candidate."""
    urgency: float
    blockedness: float
    recency: float
    leverage: float
    user_intent: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "urgency": self.urgency,
            "blockedness": self.blockedness,
            "recency": self.recency,
            "leverage": self.leverage,
            "user_intent": self.user_intent,
        }


@dataclass
class Candidate:
    """A scorable representation of one open work item."""
    key: str
    kind: str
    title: str
    ref_id: str
    context_tags: List[str] = field(default_factory=list)
    score: float = 0.0
    confidence: float = 0.0
    reasons: List[str] = field(default_factory=list)
    recommended_action: Optional[RecommendedAction] = None
    features: Optional[Features] = None
    suppressors: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Candidate":
        """Rebuild a candidate from its JSON shape (e.g. a deferred focus)."""
        if not isinstance(data, dict):
            raise ValueError("candidate must be an object")
        for required in ("key", "kind", "title", "ref_id"):
            if data.get(required) in (None, ""):
                raise ValueError(f"candidate is missing '{required}'")
        action = data.get("recommended_action")
        features = data.get("features")
        return cls(
            key=str(data["key"]),
            kind=str(data["kind"]),
            title=str(data["title"]),
            ref_id=str(data["ref_id"]),
            context_tags=list(data.get("context_tags") or []),
            score=float(data.get("score") or 0.0),
            confidence=float(data.get("confidence") or 0.0),
            reasons=list(data.get("reasons") or []),
            recommended_action=RecommendedAction.from_dict(action) if action else None,
            features=Features(**features) if isinstance(features, dict) else None,
            suppressors=list((data.get("explanation") or {}).get("suppressors") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "kind": self.kind,
            "title": self.title,
            "ref_id": self.ref_id,
            "context_tags": list(self.context_tags),
            "score": self.score,
            "confidence": self.confidence,
            "reasons": list(self.reasons),
            "recommended_action": (
                self.recommended_action.to_dict() if self.recommended_action else None
            ),
            "features": self.features.to_dict() if self.features else None,
            "explanation": {
                "drivers": list(self.reasons),
                "suppressors": list(self.suppressors),
            },
        }


@dataclass
class Future:
    """A runner-up candidate the user may promote into the focus slot."""
    id: str
    key: str
    title: str
    confidence: float
    horizon: str  # next|later
    candidate: Candidate

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "key": self.key,
            "title": self.title,
            "confidence": self.confidence,
            "horizon": self.horizon,
            "original_candidate": self.candidate.to_dict(),
        }


@dataclass
class ResolvedNow:
    """A single confident focus was found."""
    primary_focus: Candidate
    confidence_score: float
    supporting_reasons: List[str]
    recommended_action: RecommendedAction
    futures: List[Future] = field(default_factory=list)

    status = "resolved_now"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "primary_focus": self.primary_focus.to_dict(),
            "confidence_score": self.confidence_score,
            "supporting_reasons": list(self.supporting_reasons),
            "recommended_action": self.recommended_action.to_dict(),
            "futures": [f.to_dict() for f in self.futures],
        }


@dataclass
class NoClearNow:
    """Nothing stands out (empty input, low confidence, or a tie)."""
    explanation: str
    fallback_action: Optional[RecommendedAction] = None

    status = "no_clear_now"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "explanation": self.explanation,
            "fallback_action": self.fallback_action.to_dict() if self.fallback_action else None,
        }


@dataclass
class Deferred:
    """The user asked to be left alone; cooldown is active."""
    cooldown_until: datetime
    last_known_focus: Optional[Candidate] = None

    status = "deferred"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "last_known_focus": self.last_known_focus.to_dict() if self.last_known_focus else None,
            "cooldown_until": format_timestamp(self.cooldown_until),
        }


NowResult = Union[ResolvedNow, NoClearNow, Deferred]
