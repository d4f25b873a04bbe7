"""Core focus-resolution algorithms: candidates, scoring, confidence, actions.

compute_now() is a pure function of the bundle (and the "now" inside it):
no I/O, no shared state, safe to call concurrently.
"""

import math
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Tuple

from loguru import logger

from .models import (
    DEFER_NOW, OVERRIDE_NOW, EXECUTED_ACTION,
    KIND_ACTION, KIND_DECISION, KIND_BLOCKER, KIND_SESSION,
    Candidate, Deferred, Features, Future, NoClearNow, NowResult,
    RecommendedAction, ResolvedNow, SignalBundle, WorkItem,
)


# Tunables
CONFIDENCE_THRESHOLD = 0.60
MARGIN_TO_AVOID_TIES = 0.12
SEPARATION_SCALE = 0.5
HARD_SIGNAL_BONUS = 0.10
MAX_REASONS = 3
MAX_FUTURES = 3

# Score weights
W_URGENCY = 0.30
W_BLOCKEDNESS = 0.22
W_RECENCY = 0.18
W_LEVERAGE = 0.18
W_USER_INTENT = 0.12

# Confidence weights
W_STRENGTH = 0.55
W_SEPARATION = 0.35

# Decay
IGNORE_DECAY_PER_IGNORE = 0.15
IGNORE_DECAY_CAP = 0.45
DEFER_COOLDOWN_HOURS = 24

# Feature baselines
RECENCY_BASELINE = 0.2
RECENCY_TAU_HOURS = 24.0
USER_INTENT_BASELINE = 0.25
USER_INTENT_PROJECT_MATCH = 0.6
USER_INTENT_WINDOW_HOURS = 24

ACTIONABLE_ACTION_STATUSES = ("open", "in_progress", "active")

FALLBACK_REASON = "Best next step."

EMPTY_EXPLANATION = "No actionable focus detected. Capture intent or start a session."
UNCLEAR_EXPLANATION = "No single focus stands out. Set an intent or check your lists."


def clamp01(x: float) -> float:
    return max(0.0, min(1.0, x))


def start_session_action() -> RecommendedAction:
    return RecommendedAction(
        label="Start a new session",
        action_type="advance",
        payload={"route": "/chat", "intent": "new"},
    )


def set_intent_action() -> RecommendedAction:
    return RecommendedAction(
        label="Set Intent",
        action_type="advance",
        payload={"route": "/bridge", "intent": "set_now"},
    )


# --- Pluggable feature strategies ---

def default_recency(candidate: Candidate, item: Optional[WorkItem], bundle: SignalBundle) -> float:
    """exp(-Δt / τ) since the item was last touched, floored at the baseline."""
    if item is None or item.updated_at is None:
        return RECENCY_BASELINE
    hours_ago = (bundle.now - item.updated_at).total_seconds() / 3600
    if hours_ago <= 0:
        return 1.0
    return max(RECENCY_BASELINE, math.exp(-hours_ago / RECENCY_TAU_HOURS))


def default_user_intent(candidate: Candidate, item: Optional[WorkItem], bundle: SignalBundle) -> float:
    """Similarity of the candidate to recent explicit user signals."""
    window_start = bundle.now - timedelta(hours=USER_INTENT_WINDOW_HOURS)
    best = USER_INTENT_BASELINE
    for event in bundle.user_events:
        if event.type not in (OVERRIDE_NOW, EXECUTED_ACTION):
            continue
        if not (window_start <= event.timestamp <= bundle.now):
            continue
        payload = event.payload
        if payload.get("candidate_key") == candidate.key:
            return 1.0
        if payload.get("ref_id") is not None and str(payload["ref_id"]) == candidate.ref_id:
            return 1.0
        if payload.get("project") and payload["project"] in candidate.context_tags:
            best = max(best, USER_INTENT_PROJECT_MATCH)
    return best


def never_near_done(candidate: Candidate, item: Optional[WorkItem], bundle: SignalBundle) -> bool:
    """Near-completion predicate; no heuristic is defined yet, so always "Resume"."""
    return False


FeatureFn = Callable[[Candidate, Optional[WorkItem], SignalBundle], float]
PredicateFn = Callable[[Candidate, Optional[WorkItem], SignalBundle], bool]


@dataclass(frozen=True)
class FeatureStrategies:
    """Swappable signal sources; scoring and confidence logic stay fixed."""
    recency: FeatureFn = default_recency
    user_intent: FeatureFn = default_user_intent
    is_near_done: PredicateFn = never_near_done


DEFAULT_STRATEGIES = FeatureStrategies()


# --- Guard ---

class DeferredGuard:
    """Short-circuits the pipeline while an explicit "not now" is in effect."""

    @staticmethod
    def latest_defer_type_event(bundle: SignalBundle):
        """Latest DEFER_NOW/OVERRIDE_NOW by timestamp; log order breaks ties."""
        latest = None
        for event in bundle.user_events:
            if event.type not in (DEFER_NOW, OVERRIDE_NOW):
                continue
            if latest is None or event.timestamp >= latest.timestamp:
                latest = event
        return latest

    @staticmethod
    def check(bundle: SignalBundle) -> Optional[Deferred]:
        event = DeferredGuard.latest_defer_type_event(bundle)
        if event is None or event.type != DEFER_NOW:
            return None

        cooldown_until = event.timestamp + timedelta(hours=DEFER_COOLDOWN_HOURS)
        if bundle.now >= cooldown_until:
            return None

        last_focus = None
        raw = event.payload.get("last_focus_candidate")
        if raw:
            try:
                last_focus = Candidate.from_dict(raw)
            except (TypeError, ValueError) as e:
                logger.warning(f"Ignoring malformed last_focus_candidate: {e}")

        return Deferred(cooldown_until=cooldown_until, last_known_focus=last_focus)


# --- Candidates ---

class CandidateBuilder:
    """Turns actionable bundle entries into uniform candidates."""

    @staticmethod
    def is_actionable(kind: str, item: WorkItem) -> bool:
        if kind == KIND_ACTION:
            return item.status in ACTIONABLE_ACTION_STATUSES
        if kind == KIND_DECISION:
            return item.status == "unresolved"
        if kind == KIND_BLOCKER:
            return item.status == "active"
        # Sessions are always resumable
        return kind == KIND_SESSION

    @staticmethod
    def make_candidate(kind: str, item: WorkItem) -> Candidate:
        if kind == KIND_ACTION:
            title = item.title
            tags = [item.project] if item.project else []
        elif kind == KIND_DECISION:
            title = item.title
            tags = ["Decision"]
        elif kind == KIND_BLOCKER:
            title = f"Blocker: {item.title}"
            tags = ["Blocker"]
        else:
            title = item.title or "Active Session"
            tags = ["Session"]

        return Candidate(
            key=f"{kind}:{item.id}",
            kind=kind,
            title=title,
            ref_id=item.id,
            context_tags=tags,
        )

    @staticmethod
    def build(bundle: SignalBundle) -> List[Tuple[Candidate, WorkItem]]:
        """Build candidates paired with their source items, keys unique."""
        built = []
        seen_keys = set()
        for kind in (KIND_ACTION, KIND_DECISION, KIND_BLOCKER, KIND_SESSION):
            for item in bundle.items_for(kind):
                if not CandidateBuilder.is_actionable(kind, item):
                    continue
                candidate = CandidateBuilder.make_candidate(kind, item)
                if candidate.key in seen_keys:
                    logger.warning(f"Dropping duplicate candidate {candidate.key}")
                    continue
                seen_keys.add(candidate.key)
                built.append((candidate, item))
        return built


# --- Scoring ---

class FeatureScorer:
    """Computes the five weighted features and the scalar score."""

    @staticmethod
    def urgency(item: Optional[WorkItem]) -> float:
        if item is None or item.priority is None:
            return 0.2
        priority = item.priority
        if isinstance(priority, str):
            priority = priority.strip().lower()
        if priority in ("critical", 4):
            return 1.0
        if priority in ("high", 3):
            return 0.7
        return 0.2

    @staticmethod
    def blockedness(candidate: Candidate) -> float:
        return 1.0 if candidate.kind == KIND_BLOCKER else 0.2

    @staticmethod
    def leverage(candidate: Candidate) -> float:
        if candidate.kind == KIND_BLOCKER:
            return 0.85
        if candidate.kind == KIND_DECISION:
            return 0.80
        return 0.35

    @staticmethod
    def extract(
        candidate: Candidate,
        item: Optional[WorkItem],
        bundle: SignalBundle,
        strategies: FeatureStrategies = DEFAULT_STRATEGIES
    ) -> Features:
        return Features(
            urgency=FeatureScorer.urgency(item),
            blockedness=FeatureScorer.blockedness(candidate),
            recency=clamp01(strategies.recency(candidate, item, bundle)),
            leverage=FeatureScorer.leverage(candidate),
            user_intent=clamp01(strategies.user_intent(candidate, item, bundle)),
        )

    @staticmethod
    def weighted_score(f: Features) -> float:
        return (
            W_URGENCY * f.urgency +
            W_BLOCKEDNESS * f.blockedness +
            W_RECENCY * f.recency +
            W_LEVERAGE * f.leverage +
            W_USER_INTENT * f.user_intent
        )


class IgnoreDecay:
    """Penalizes candidates the user has dismissed repeatedly."""

    @staticmethod
    def ignore_count(key: str, bundle: SignalBundle) -> int:
        return sum(max(0, i.count) for i in bundle.ignored_candidates if i.key == key)

    @staticmethod
    def penalty(count: int) -> float:
        return min(IGNORE_DECAY_CAP, count * IGNORE_DECAY_PER_IGNORE)

    @staticmethod
    def apply(score: float, count: int) -> float:
        return max(0.0, score - IgnoreDecay.penalty(count))


# --- Confidence ---

class ConfidenceResolver:
    """Decides whether the top candidate is clear enough to present."""

    @staticmethod
    def confidence(top: Candidate, runner_up: Optional[Candidate]) -> float:
        strength = clamp01(top.score)
        separation = 0.0
        if runner_up is not None:
            separation = clamp01((top.score - runner_up.score) / SEPARATION_SCALE)
        bonus = HARD_SIGNAL_BONUS if ConfidenceResolver.has_hard_signal(top) else 0.0
        return clamp01(W_STRENGTH * strength + W_SEPARATION * separation + bonus)

    @staticmethod
    def has_hard_signal(candidate: Candidate) -> bool:
        urgency = candidate.features.urgency if candidate.features else 0.0
        return candidate.kind == KIND_BLOCKER or urgency > 0.9

    @staticmethod
    def decline_reason(top: Candidate, runner_up: Optional[Candidate]) -> Optional[str]:
        """Return why the pick is declined, or None to present it."""
        if top.confidence < CONFIDENCE_THRESHOLD:
            return "low_confidence"
        if runner_up is not None and top.score - runner_up.score < MARGIN_TO_AVOID_TIES:
            return "tie"
        return None


# --- Actions ---

class ActionRecommender:
    """Attaches reasons and a concrete next action to candidates."""

    @staticmethod
    def reasons(f: Features) -> List[str]:
        reasons = []
        if f.urgency >= 0.7:
            reasons.append("Time-sensitive: approaching deadline.")
        if f.blockedness >= 0.6:
            reasons.append("Unblocks other work.")
        if f.user_intent >= 0.6:
            reasons.append("Matches recent intent.")
        if f.recency >= 0.7:
            reasons.append("You were working on this recently.")
        if f.leverage >= 0.7:
            reasons.append("High leverage item.")

        if not reasons:
            reasons.append(FALLBACK_REASON)
        return reasons[:MAX_REASONS]

    @staticmethod
    def action_for(
        candidate: Candidate,
        item: Optional[WorkItem],
        bundle: SignalBundle,
        strategies: FeatureStrategies = DEFAULT_STRATEGIES
    ) -> RecommendedAction:
        def make(label: str, action_type: str, op: str) -> RecommendedAction:
            return RecommendedAction(label, action_type, {"ref_id": candidate.ref_id, "op": op})

        if candidate.kind == KIND_BLOCKER:
            return make("Unblock", "resolve", "resolve_blocker")
        if candidate.kind == KIND_DECISION:
            return make("Make Decision", "decide", "open_decision")
        if candidate.kind == KIND_ACTION:
            if strategies.is_near_done(candidate, item, bundle):
                return make("Complete", "resolve", "complete_action")
            return make("Resume", "advance", "resume_action")
        if candidate.kind == KIND_SESSION:
            return make("Resume Session", "advance", "resume_session")
        return make("Open", "advance", "open")

    @staticmethod
    def futures(ranked: List[Candidate]) -> List[Future]:
        """The next candidates after the winner, each with its own confidence."""
        futures = []
        for index in range(1, min(len(ranked), MAX_FUTURES + 1)):
            candidate = ranked[index]
            below = ranked[index + 1] if index + 1 < len(ranked) else None
            candidate.confidence = ConfidenceResolver.confidence(candidate, below)
            futures.append(Future(
                id=candidate.ref_id,
                key=candidate.key,
                title=candidate.title,
                confidence=candidate.confidence,
                horizon="next" if index == 1 else "later",
                candidate=candidate,
            ))
        return futures


def score_candidates(
    bundle: SignalBundle,
    strategies: FeatureStrategies = DEFAULT_STRATEGIES
) -> List[Candidate]:
    """Build, score, decay and rank candidates (highest decayed score first)."""
    candidates = []
    for candidate, item in CandidateBuilder.build(bundle):
        features = FeatureScorer.extract(candidate, item, bundle, strategies)
        ignores = IgnoreDecay.ignore_count(candidate.key, bundle)

        candidate.features = features
        candidate.score = IgnoreDecay.apply(FeatureScorer.weighted_score(features), ignores)
        candidate.reasons = ActionRecommender.reasons(features)
        if ignores:
            plural = "time" if ignores == 1 else "times"
            candidate.suppressors = [f"Dismissed {ignores} {plural}."]
        candidate.recommended_action = ActionRecommender.action_for(
            candidate, item, bundle, strategies
        )
        candidates.append(candidate)

    # sort() is stable, so equal scores keep builder order
    candidates.sort(key=lambda c: c.score, reverse=True)
    return candidates


def compute_now(
    bundle: SignalBundle,
    strategies: Optional[FeatureStrategies] = None
) -> NowResult:
    """
    Resolve the single focus for this bundle.

    Returns exactly one of ResolvedNow, NoClearNow or Deferred.
    """
    strategies = strategies or DEFAULT_STRATEGIES

    deferred = DeferredGuard.check(bundle)
    if deferred is not None:
        logger.debug(f"Deferred until {deferred.cooldown_until.isoformat()}")
        return deferred

    ranked = score_candidates(bundle, strategies)
    if not ranked:
        return NoClearNow(explanation=EMPTY_EXPLANATION, fallback_action=start_session_action())

    top = ranked[0]
    runner_up = ranked[1] if len(ranked) > 1 else None
    top.confidence = ConfidenceResolver.confidence(top, runner_up)

    declined = ConfidenceResolver.decline_reason(top, runner_up)
    if declined:
        logger.debug(
            f"No clear now ({declined}): top={top.key} score={top.score:.3f} "
            f"confidence={top.confidence:.3f}"
        )
        return NoClearNow(explanation=UNCLEAR_EXPLANATION, fallback_action=set_intent_action())

    logger.debug(f"Resolved now: {top.key} confidence={top.confidence:.3f}")
    return ResolvedNow(
        primary_focus=top,
        confidence_score=top.confidence,
        supporting_reasons=list(top.reasons),
        recommended_action=top.recommended_action,
        futures=ActionRecommender.futures(ranked),
    )


def weights() -> Dict[str, float]:
    """The scoring policy knob, keyed by feature name."""
    return {
        "urgency": W_URGENCY,
        "blockedness": W_BLOCKEDNESS,
        "recency": W_RECENCY,
        "leverage": W_LEVERAGE,
        "user_intent": W_USER_INTENT,
    }
