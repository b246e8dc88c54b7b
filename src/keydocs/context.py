"""Context relevance engine.

Learns which credentials get used in which execution contexts (active
application, file extension, project type, language) and ranks candidate
credentials for the current context. Also scores how risky the context is
for exposing a key.

State is two maps, checkpointed to ``usage_patterns.json`` and
``key_preferences.json`` under the configured cache directory.
"""

from __future__ import annotations

import copy
import logging
import math
import threading
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .checkpoint import CheckpointWriter, read_json, write_json_atomic
from .config import ContextConfig, get_config
from .errors import InvalidInputError, PersistenceError
from .models import utcnow

logger = logging.getLogger(__name__)

USAGE_PATTERNS_FILE = "usage_patterns.json"
KEY_PREFERENCES_FILE = "key_preferences.json"

# Similarity above which a stored context counts as "the same kind" of context
SIMILAR_CONTEXT_CUTOFF = 0.5
FUZZY_APP_MATCH = 0.7

SECURITY_CONFIDENCE = 0.85


@dataclass
class ContextInfo:
    """Snapshot of the user's execution context. Every field is optional."""
    active_app: Optional[str] = None
    file_path: Optional[str] = None
    file_extension: Optional[str] = None
    project_type: Optional[str] = None
    language: Optional[str] = None
    content_snippet: Optional[str] = None

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if value is not None and not isinstance(value, str):
                raise InvalidInputError(f"{f.name} must be a string, got {type(value).__name__}")
            if value is not None and not value.strip():
                setattr(self, f.name, None)
        if self.file_extension:
            self.file_extension = self.file_extension.lstrip(".")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ContextInfo":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise InvalidInputError(f"Unknown context field(s): {', '.join(sorted(unknown))}")
        return cls(**data)

    def to_dict(self) -> dict[str, Optional[str]]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def context_similarity(a: ContextInfo, b: ContextInfo) -> float:
    """Average match over the fields both contexts carry.

    Exact matches score 1.0. Application names also score 0.7 when one
    contains the other, ignoring case. No shared fields gives 0.0.
    """
    score = 0.0
    factors = 0

    if a.active_app is not None and b.active_app is not None:
        if a.active_app == b.active_app:
            score += 1.0
        else:
            app_a, app_b = a.active_app.lower(), b.active_app.lower()
            if app_a in app_b or app_b in app_a:
                score += FUZZY_APP_MATCH
        factors += 1

    for name in ("file_extension", "project_type", "language"):
        value_a, value_b = getattr(a, name), getattr(b, name)
        if value_a is not None and value_b is not None:
            if value_a == value_b:
                score += 1.0
            factors += 1

    return score / factors if factors else 0.0


@dataclass
class UsagePattern:
    """One recorded use of a credential."""
    key_id: str
    context: ContextInfo
    timestamp: datetime
    success: bool
    confidence_feedback: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "key_id": self.key_id,
            "context": self.context.to_dict(),
            "timestamp": self.timestamp.isoformat(),
            "success": self.success,
            "confidence_feedback": self.confidence_feedback,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UsagePattern":
        return cls(
            key_id=data["key_id"],
            context=ContextInfo.from_dict(data.get("context") or {}),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            success=bool(data["success"]),
            confidence_feedback=data.get("confidence_feedback"),
        )


@dataclass
class KeyPreferences:
    """Running aggregate of a credential's usage."""
    last_used: datetime
    success_rate: float = 0.0
    total_uses: int = 0
    preferred_contexts: list[ContextInfo] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "preferred_contexts": [c.to_dict() for c in self.preferred_contexts],
            "success_rate": self.success_rate,
            "total_uses": self.total_uses,
            "last_used": self.last_used.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "KeyPreferences":
        return cls(
            preferred_contexts=[ContextInfo.from_dict(c) for c in data.get("preferred_contexts", [])],
            success_rate=float(data.get("success_rate", 0.0)),
            total_uses=int(data.get("total_uses", 0)),
            last_used=datetime.fromisoformat(data["last_used"]),
        )


class KeyFormat(str, Enum):
    """How a suggested key should be written into the current file."""
    PLAIN = "plain"
    ENVIRONMENT_VARIABLE = "environment_variable"
    PROCESS_ENV = "process_env"
    CONFIG_FILE = "config_file"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def from_score(cls, score: float) -> "RiskLevel":
        if score >= 0.7:
            return cls.CRITICAL
        if score >= 0.5:
            return cls.HIGH
        if score >= 0.3:
            return cls.MEDIUM
        return cls.LOW


@dataclass
class KeySuggestion:
    key_id: str
    confidence: float
    reason: str
    suggested_format: KeyFormat


@dataclass
class UsagePrediction:
    frequency_score: float
    recency_score: float
    context_match_score: float
    predicted_next_usage: Optional[datetime] = None


@dataclass
class SecurityScore:
    risk_level: RiskLevel
    score: float
    confidence: float = SECURITY_CONFIDENCE
    reasons: list[str] = field(default_factory=list)


@dataclass
class MLPrediction:
    """Everything ``analyze_context`` learns about a context."""
    api_key_suggestions: list[KeySuggestion]
    context_confidence: float
    usage_prediction: UsagePrediction
    security_score: SecurityScore


# --- Pure helpers ---

FORMAT_BY_EXTENSION = {
    "env": KeyFormat.ENVIRONMENT_VARIABLE,
    "js": KeyFormat.PROCESS_ENV,
    "ts": KeyFormat.PROCESS_ENV,
    "jsx": KeyFormat.PROCESS_ENV,
    "tsx": KeyFormat.PROCESS_ENV,
    "json": KeyFormat.CONFIG_FILE,
    "yaml": KeyFormat.CONFIG_FILE,
    "yml": KeyFormat.CONFIG_FILE,
    "toml": KeyFormat.CONFIG_FILE,
}

BROWSER_APPS = ("browser", "chrome", "firefox", "safari")
TERMINAL_APPS = ("terminal", "cmd", "powershell")
TEMP_PATHS = ("/tmp", "temp", "\\temp")
PUBLIC_PATHS = ("downloads", "desktop")
SCRIPT_EXTENSIONS = ("sh", "bat", "cmd", "ps1")
PLAIN_TEXT_EXTENSIONS = ("log", "txt")


def determine_key_format(context: ContextInfo) -> KeyFormat:
    return FORMAT_BY_EXTENSION.get(context.file_extension or "", KeyFormat.PLAIN)


def suggestion_reason(confidence: float, preferences: Optional[KeyPreferences]) -> str:
    """Human-readable explanation for a confidence tier."""
    if preferences is None:
        return "New key for this context"
    if confidence > 0.8:
        return (
            "Frequently used in similar contexts "
            f"({preferences.success_rate * 100:.0f}% success rate)"
        )
    if confidence > 0.6:
        return "Recently used in this type of project"
    if confidence > 0.4:
        return "Matches current file type or environment"
    return "Available for this context"


def security_score(context: ContextInfo) -> SecurityScore:
    """Additive risk heuristic over app name, file path and extension."""
    risk = 0.0
    reasons: list[str] = []

    if context.active_app:
        app = context.active_app.lower()
        if any(term in app for term in BROWSER_APPS):
            risk += 0.4
            reasons.append("Web browser context detected")
        if any(term in app for term in TERMINAL_APPS):
            risk += 0.2
            reasons.append("Command line interface detected")

    if context.file_path:
        path = context.file_path.lower()
        if any(term in path for term in TEMP_PATHS):
            risk += 0.3
            reasons.append("Temporary file location")
        if any(term in path for term in PUBLIC_PATHS):
            risk += 0.2
            reasons.append("Public folder location")

    if context.file_extension in SCRIPT_EXTENSIONS:
        risk += 0.3
        reasons.append("Script file detected")
    elif context.file_extension in PLAIN_TEXT_EXTENSIONS:
        risk += 0.1
        reasons.append("Plain text file - keys may be visible")

    # Round away float drift (0.4 + 0.1 must land on 0.5)
    risk = round(risk, 6)
    return SecurityScore(risk_level=RiskLevel.from_score(risk), score=risk, reasons=reasons)


def _hours_between(earlier: datetime, later: datetime) -> float:
    return max(0.0, (later - earlier).total_seconds() / 3600.0)


class ContextRelevanceEngine:
    """Ranks credentials for a context from their recorded usage.

    Both maps are guarded by one lock, since ``record_usage`` updates them
    together. Persistence runs on a ``CheckpointWriter`` thread after the
    in-memory update is visible.
    """

    def __init__(self, config: Optional[ContextConfig] = None):
        self.config = config or get_config().context
        self._lock = threading.RLock()
        self._usage_patterns: dict[str, list[UsagePattern]] = {}
        self._key_preferences: dict[str, KeyPreferences] = {}
        self._checkpoint = CheckpointWriter(
            self._save, delay_seconds=self.config.checkpoint_delay_seconds
        )

    @property
    def cache_dir(self) -> Path:
        return self.config.cache_dir

    @property
    def patterns_path(self) -> Path:
        return self.cache_dir / USAGE_PATTERNS_FILE

    @property
    def preferences_path(self) -> Path:
        return self.cache_dir / KEY_PREFERENCES_FILE

    # --- Persistence ---

    def load(self) -> bool:
        """Replace in-memory state with the last checkpoint.

        Missing files mean an empty start. Unreadable files are logged and
        leave the current state untouched.

        Returns:
            True if the checkpoint loaded cleanly.
        """
        try:
            raw_patterns = read_json(self.patterns_path) or {}
            raw_preferences = read_json(self.preferences_path) or {}
            patterns = {
                key_id: [UsagePattern.from_dict(p) for p in items]
                for key_id, items in raw_patterns.items()
            }
            preferences = {
                key_id: KeyPreferences.from_dict(p) for key_id, p in raw_preferences.items()
            }
        except PersistenceError as e:
            logger.warning("Could not load usage checkpoint: %s", e)
            return False
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning("Ignoring malformed usage checkpoint in %s: %s", self.cache_dir, e)
            return False

        with self._lock:
            self._usage_patterns = patterns
            self._key_preferences = preferences

        logger.info(
            "Loaded usage history for %d credential(s) from %s", len(patterns), self.cache_dir
        )
        return True

    def _save(self) -> None:
        with self._lock:
            patterns = {
                key_id: [p.to_dict() for p in items]
                for key_id, items in self._usage_patterns.items()
            }
            preferences = {
                key_id: prefs.to_dict() for key_id, prefs in self._key_preferences.items()
            }
        write_json_atomic(self.patterns_path, patterns)
        write_json_atomic(self.preferences_path, preferences)
        logger.debug("Checkpointed usage history to %s", self.cache_dir)

    def flush(self) -> bool:
        """Write any pending checkpoint synchronously."""
        return self._checkpoint.flush()

    def close(self) -> None:
        self._checkpoint.close()

    # --- Learning ---

    def record_usage(
        self,
        key_id: str,
        context: ContextInfo,
        success: bool,
        now: Optional[datetime] = None,
    ) -> None:
        """Record one use of ``key_id`` and schedule a checkpoint."""
        if not key_id:
            raise InvalidInputError("key_id must not be empty")
        if now is None:
            now = utcnow()

        cfg = self.config
        # Stored history must not follow later edits to the caller's snapshot
        context = replace(context)
        pattern = UsagePattern(key_id=key_id, context=context, timestamp=now, success=success)

        with self._lock:
            history = self._usage_patterns.setdefault(key_id, [])
            history.append(pattern)
            if len(history) > cfg.max_patterns_per_key:
                del history[: len(history) - cfg.max_patterns_per_key]

            prefs = self._key_preferences.get(key_id)
            if prefs is None:
                prefs = KeyPreferences(last_used=now)
                self._key_preferences[key_id] = prefs

            prefs.total_uses += 1
            prefs.last_used = now
            n = prefs.total_uses
            prefs.success_rate = (prefs.success_rate * (n - 1) + (1.0 if success else 0.0)) / n

            if success and not any(
                context_similarity(context, existing) > cfg.preferred_similarity_cutoff
                for existing in prefs.preferred_contexts
            ):
                prefs.preferred_contexts.append(context)
                if len(prefs.preferred_contexts) > cfg.max_preferred_contexts:
                    del prefs.preferred_contexts[0]

        self._checkpoint.request()

    # --- Scoring ---

    def _key_confidence(
        self,
        key_id: str,
        context: ContextInfo,
        now: datetime,
    ) -> float:
        """Weighted frequency, recency, success and context match. Caller holds the lock."""
        cfg = self.config
        confidence = 0.0

        history = self._usage_patterns.get(key_id, [])
        if history:
            confidence += math.log(len(history)) / 10.0 * cfg.frequency_weight

        prefs = self._key_preferences.get(key_id)
        if prefs is not None:
            hours = _hours_between(prefs.last_used, now)
            confidence += math.exp(-hours / cfg.recency_decay_hours) * cfg.recency_weight
            confidence += prefs.success_rate * cfg.success_weight

        recent = history[-cfg.history_window:] if cfg.history_window > 0 else []
        if recent:
            similarity = sum(context_similarity(context, p.context) for p in recent) / len(recent)
            confidence += similarity * cfg.context_weight

        return min(confidence, 1.0)

    def _context_confidence(self, context: ContextInfo) -> float:
        """How much signal the context carries. Caller holds the lock."""
        score = 0.0
        factors = 0
        for value, weight in (
            (context.active_app, 0.25),
            (context.file_extension, 0.35),
            (context.project_type, 0.25),
            (context.language, 0.15),
        ):
            if value is not None:
                score += weight
                factors += 1

        similar = sum(
            1
            for history in self._usage_patterns.values()
            for pattern in history
            if context_similarity(context, pattern.context) > SIMILAR_CONTEXT_CUTOFF
        )
        if similar > 5:
            score += 0.3
        elif similar > 0:
            score += 0.1

        return min(score / factors, 1.0) if factors else 0.0

    def _usage_prediction(self, context: ContextInfo, now: datetime) -> UsagePrediction:
        """Aggregate usage outlook across all credentials. Caller holds the lock."""
        frequency = 0.0
        recency = 0.0
        matches = 0

        for prefs in self._key_preferences.values():
            for preferred in prefs.preferred_contexts:
                if context_similarity(context, preferred) > SIMILAR_CONTEXT_CUTOFF:
                    frequency += prefs.total_uses / 100.0
                    hours = _hours_between(prefs.last_used, now)
                    recency += math.exp(-hours / self.config.usage_decay_hours)
                    matches += 1

        context_match = (
            min(matches / len(self._key_preferences), 1.0) if matches else 0.0
        )

        if context_match > 0.5:
            predicted: Optional[datetime] = now + timedelta(minutes=30)
        elif context_match > 0.3:
            predicted = now + timedelta(hours=2)
        else:
            predicted = None

        return UsagePrediction(
            frequency_score=min(frequency / 10.0, 1.0),
            recency_score=min(recency / matches, 1.0) if matches else 0.0,
            context_match_score=context_match,
            predicted_next_usage=predicted,
        )

    def analyze_context(
        self,
        context: ContextInfo,
        candidate_key_ids: list[str],
        now: Optional[datetime] = None,
    ) -> MLPrediction:
        """Rank ``candidate_key_ids`` for ``context``.

        Candidates at or below ``similarity_threshold`` are dropped; the
        rest are sorted by confidence (then key id) and truncated to
        ``max_suggestions``.
        """
        if now is None:
            now = utcnow()
        cfg = self.config
        key_format = determine_key_format(context)

        with self._lock:
            suggestions = []
            for key_id in dict.fromkeys(candidate_key_ids):
                confidence = self._key_confidence(key_id, context, now)
                if confidence > cfg.similarity_threshold:
                    suggestions.append(
                        KeySuggestion(
                            key_id=key_id,
                            confidence=confidence,
                            reason=suggestion_reason(confidence, self._key_preferences.get(key_id)),
                            suggested_format=key_format,
                        )
                    )
            context_confidence = self._context_confidence(context)
            usage_prediction = self._usage_prediction(context, now)

        suggestions.sort(key=lambda s: (-s.confidence, s.key_id))
        suggestions = suggestions[: cfg.max_suggestions]

        logger.debug(
            "Context analysis kept %d of %d candidate(s)", len(suggestions), len(candidate_key_ids)
        )
        return MLPrediction(
            api_key_suggestions=suggestions,
            context_confidence=context_confidence,
            usage_prediction=usage_prediction,
            security_score=security_score(context),
        )

    def get_usage_stats(self) -> dict[str, dict[str, Any]]:
        """Per-credential usage counts and success rates over stored history."""
        stats: dict[str, dict[str, Any]] = {}
        with self._lock:
            for key_id, history in self._usage_patterns.items():
                successes = sum(1 for p in history if p.success)
                entry: dict[str, Any] = {
                    "usage_count": len(history),
                    "success_rate": successes / len(history) if history else 0.0,
                }
                prefs = self._key_preferences.get(key_id)
                if prefs is not None:
                    entry["last_used"] = prefs.last_used.isoformat()
                    entry["preferred_contexts_count"] = len(prefs.preferred_contexts)
                stats[key_id] = entry
        return stats

    def get_preferences(self, key_id: str) -> Optional[KeyPreferences]:
        """Copy of the running aggregate for ``key_id``."""
        with self._lock:
            prefs = self._key_preferences.get(key_id)
            if prefs is None:
                return None
            return copy.deepcopy(prefs)

    def get_usage_patterns(self, key_id: str) -> list[UsagePattern]:
        with self._lock:
            return copy.deepcopy(self._usage_patterns.get(key_id, []))
