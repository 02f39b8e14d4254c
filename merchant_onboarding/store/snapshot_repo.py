import json
import inspect
from dataclasses import asdict, fields as dc_fields, replace
from enum import Enum
from typing import List, Optional

from redis import Redis
from redis.exceptions import RedisError

from merchant_onboarding.settings import settings
from merchant_onboarding.store.redis_conn import get_redis
from merchant_onboarding.store.models import (
    STEP_ORDER,
    BusinessProfile,
    ExpectedVolume,
    Step,
    VerificationStatus,
    WorkflowData,
    WorkflowState,
)
from merchant_onboarding.observability.logging import log
from merchant_onboarding.utils.time import HOUR_MS, now_ms

CHECKPOINT_INFIX = "_checkpoint_"

# Cleared by scrub_sensitive(); progress flags are kept.
SENSITIVE_DATA_FIELDS = ("idNumber",)


def _json_safe(obj):
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, set):
        # Step order, not hash order, so snapshots are stable
        order = {s: i for i, s in enumerate(STEP_ORDER)}
        return [_json_safe(v) for v in sorted(obj, key=lambda s: order.get(s, len(order)))]
    if isinstance(obj, dict):
        return {k: _json_safe(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_json_safe(v) for v in obj]
    return obj


def _filter_kwargs(cls, data: dict) -> dict:
    """
    Drop unknown fields so cls(**kwargs) never explodes
    """
    allowed = set(inspect.signature(cls).parameters.keys())
    return {k: v for k, v in data.items() if k in allowed}


def serialize_state(state: WorkflowState) -> dict:
    data = asdict(state)
    # asdict() deep-copies the set; keep it a set so _json_safe orders it
    data["completedSteps"] = set(state.completedSteps)
    return _json_safe(data)


def _migrate_state_data(data: dict) -> dict:
    """
    Purge undeclared fields (top-level and nested workflow data) left by
    older writers, so rehydration never fails on stale keys.
    """
    removed_top_fields = 0
    removed_data_fields = 0

    allowed_top = {f.name for f in dc_fields(WorkflowState)}
    for k in list(data.keys()):
        if k not in allowed_top:
            del data[k]
            removed_top_fields += 1

    wd = data.get("data")
    if isinstance(wd, dict):
        allowed_wd = {f.name for f in dc_fields(WorkflowData)}
        for k in list(wd.keys()):
            if k not in allowed_wd:
                del wd[k]
                removed_data_fields += 1

    if removed_top_fields or removed_data_fields:
        log(
            event="snapshot_migrated",
            removedTopFields=int(removed_top_fields),
            removedDataFields=int(removed_data_fields),
        )
    return data


def _rehydrate_profile(raw) -> Optional[BusinessProfile]:
    if not isinstance(raw, dict):
        return None
    volume = raw.get("expectedVolume")
    raw = dict(raw)
    raw["expectedVolume"] = ExpectedVolume(**_filter_kwargs(ExpectedVolume, volume)) if isinstance(volume, dict) else ExpectedVolume()
    raw["purposeOfAccount"] = list(raw.get("purposeOfAccount") or [])
    return BusinessProfile(**_filter_kwargs(BusinessProfile, raw))


def deserialize_state(data: dict) -> WorkflowState:
    """
    Rebuild a WorkflowState from its JSON form. Raises ValueError/TypeError on
    malformed input (callers treat that as "no snapshot").
    """
    data = _migrate_state_data(dict(data))

    wd = dict(data.get("data") or {})
    if wd.get("verificationStatus") is not None:
        wd["verificationStatus"] = VerificationStatus(wd["verificationStatus"])
    wd["kybData"] = _rehydrate_profile(wd.get("kybData"))
    data["data"] = WorkflowData(**_filter_kwargs(WorkflowData, wd))

    # Rehydrate the completed-steps list back into a set
    data["completedSteps"] = {Step(s) for s in (data.get("completedSteps") or [])}
    data["currentStep"] = Step(data.get("currentStep") or Step.BUSINESS_TYPE)
    data["validationErrors"] = {str(k): str(v) for k, v in (data.get("validationErrors") or {}).items()}
    data["isLoading"] = bool(data.get("isLoading", False))

    return WorkflowState(**_filter_kwargs(WorkflowState, data))


def scrub_sensitive(state: WorkflowState) -> WorkflowState:
    """Clear sensitive identifiers while keeping progress (flags, completed steps)."""
    return replace(state, data=replace(state.data, **{f: None for f in SENSITIVE_DATA_FIELDS}))


class WorkflowSnapshotRepo:
    """
    Versioned, expiring snapshot of the workflow state under a fixed key.

    Storage failures never propagate: they are logged and the in-memory state
    stays authoritative for the session.
    """

    def __init__(
        self,
        redis: Optional[Redis] = None,
        *,
        key: Optional[str] = None,
        version: Optional[str] = None,
        ttl_hours: Optional[int] = None,
        clock=now_ms,
    ):
        self._redis = redis
        self.key = key or settings.STATE_STORAGE_KEY
        self.version = version or settings.STATE_VERSION
        self.ttl_ms = int(ttl_hours if ttl_hours is not None else settings.STATE_TTL_HOURS) * HOUR_MS
        self._clock = clock

    @property
    def redis(self) -> Redis:
        if self._redis is None:
            self._redis = get_redis()
        return self._redis

    def _checkpoint_key(self, label: str) -> str:
        return f"{self.key}{CHECKPOINT_INFIX}{label}"

    def save(self, state: WorkflowState) -> bool:
        ts = self._clock()
        snapshot = {
            "version": self.version,
            "data": serialize_state(state),
            "timestamp": ts,
            "expiresAt": ts + self.ttl_ms,
        }
        try:
            self.redis.set(self.key, json.dumps(snapshot))
            return True
        except (RedisError, OSError, TypeError, ValueError) as e:
            log(event="workflow_persist_failed", key=self.key, errorType=type(e).__name__, error=str(e)[:200])
            return False

    def load(self) -> Optional[WorkflowState]:
        try:
            raw = self.redis.get(self.key)
        except (RedisError, OSError) as e:
            log(event="workflow_load_failed", key=self.key, errorType=type(e).__name__, error=str(e)[:200])
            return None
        if not raw:
            return None

        try:
            snapshot = json.loads(raw)
            if not isinstance(snapshot, dict):
                raise ValueError("snapshot is not an object")
        except ValueError:
            log(event="workflow_snapshot_malformed", key=self.key)
            self.clear()
            return None

        if snapshot.get("version") != self.version:
            log(event="workflow_snapshot_version_mismatch", key=self.key,
                storedVersion=str(snapshot.get("version")), currentVersion=self.version)
            self.clear()
            return None

        try:
            expires_at = int(snapshot.get("expiresAt") or 0)
        except (TypeError, ValueError):
            expires_at = 0
        if self._clock() > expires_at:
            log(event="workflow_snapshot_expired", key=self.key, expiresAt=expires_at)
            self.clear()
            return None

        try:
            return deserialize_state(snapshot.get("data") or {})
        except (TypeError, ValueError, AttributeError) as e:
            log(event="workflow_snapshot_malformed", key=self.key, errorType=type(e).__name__, error=str(e)[:200])
            self.clear()
            return None

    def clear(self) -> None:
        try:
            self.redis.delete(self.key)
        except (RedisError, OSError) as e:
            log(event="workflow_clear_failed", key=self.key, errorType=type(e).__name__, error=str(e)[:200])

    def has_valid_state(self) -> bool:
        return self.load() is not None

    def state_age_minutes(self) -> int:
        """Minutes since the last write, or -1 when no readable snapshot exists."""
        try:
            raw = self.redis.get(self.key)
            if not raw:
                return -1
            snapshot = json.loads(raw)
            return int((self._clock() - int(snapshot["timestamp"])) // 60000)
        except (RedisError, OSError, ValueError, TypeError, KeyError):
            return -1

    # --- named checkpoints (diagnostic rollback, no expiry) ---

    def create_checkpoint(self, state: WorkflowState, label: str) -> bool:
        checkpoint = {
            "version": self.version,
            "data": serialize_state(state),
            "timestamp": self._clock(),
            "label": label,
        }
        try:
            self.redis.set(self._checkpoint_key(label), json.dumps(checkpoint))
            return True
        except (RedisError, OSError, TypeError, ValueError) as e:
            log(event="workflow_checkpoint_failed", label=label, errorType=type(e).__name__, error=str(e)[:200])
            return False

    def list_checkpoints(self) -> List[dict]:
        """Checkpoint descriptors ({key, label, timestamp}), newest first."""
        out: List[dict] = []
        try:
            for key in self.redis.scan_iter(match=f"{self.key}{CHECKPOINT_INFIX}*"):
                raw = self.redis.get(key)
                if not raw:
                    continue
                try:
                    cp = json.loads(raw)
                    out.append({"key": key, "label": cp.get("label"), "timestamp": int(cp.get("timestamp") or 0)})
                except (ValueError, TypeError):
                    continue
        except (RedisError, OSError) as e:
            log(event="workflow_checkpoint_list_failed", errorType=type(e).__name__, error=str(e)[:200])
        return sorted(out, key=lambda c: c["timestamp"], reverse=True)

    def restore_checkpoint(self, label: str) -> Optional[WorkflowState]:
        """Load a labelled checkpoint; version-mismatched checkpoints are ignored."""
        try:
            raw = self.redis.get(self._checkpoint_key(label))
        except (RedisError, OSError) as e:
            log(event="workflow_checkpoint_load_failed", label=label, errorType=type(e).__name__, error=str(e)[:200])
            return None
        if not raw:
            return None
        try:
            cp = json.loads(raw)
            if cp.get("version") != self.version:
                log(event="workflow_checkpoint_version_mismatch", label=label)
                return None
            return deserialize_state(cp.get("data") or {})
        except (ValueError, TypeError, AttributeError):
            log(event="workflow_checkpoint_malformed", label=label)
            return None
