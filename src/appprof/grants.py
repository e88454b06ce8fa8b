from __future__ import annotations

"""Profiling permission policies: durable per-app grants and session relaxation."""

import json
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from .errors import PermissionGrantError, PropertyWriteError
from .packages import UidResolver
from .properties import PropertyStore
from .tracepoints import TracepointExporter


logger = logging.getLogger(__name__)

UINT64_MAX = 2**64 - 1
SECONDS_PER_DAY = 24 * 3600
GRANT_PROPERTY = "persist.appprof.profile_app_grant"
PERF_HARDEN_PROPERTY = "security.perf_harden"
POLICY_DURABLE_GRANT = "durable_grant"
POLICY_SESSION_RELAXATION = "session_relaxation"


def compute_expiration(now: int, days: int) -> int:
    """Return `now + days * 86400`, saturating at UINT64_MAX instead of wrapping."""

    duration = days * SECONDS_PER_DAY
    if duration > UINT64_MAX:
        return UINT64_MAX
    expiration = now + duration
    if expiration > UINT64_MAX:
        return UINT64_MAX
    return expiration


@dataclass(frozen=True)
class PermissionGrant:
    uid: int
    expiration_time: int

    @property
    def unbounded(self) -> bool:
        return self.expiration_time >= UINT64_MAX

    def encode(self) -> str:
        return json.dumps(
            {"expiration_time": self.expiration_time, "uid": self.uid},
            sort_keys=True,
            separators=(",", ":"),
        )

    @classmethod
    def decode(cls, value: str) -> "PermissionGrant | None":
        try:
            payload = json.loads(value)
        except json.JSONDecodeError:
            return None
        if not isinstance(payload, dict):
            return None
        uid = payload.get("uid")
        expiration = payload.get("expiration_time")
        if not isinstance(uid, int) or not isinstance(expiration, int):
            return None
        return cls(uid=uid, expiration_time=expiration)

    def to_dict(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "expiration_time": "unbounded" if self.unbounded else self.expiration_time,
        }


class GrantStore:
    """Persist the grant as one record so uid and expiration change together."""

    def __init__(self, store: PropertyStore, name: str = GRANT_PROPERTY) -> None:
        self.store = store
        self.name = name

    def save(self, grant: PermissionGrant) -> None:
        self.store.set(self.name, grant.encode())

    def load(self) -> PermissionGrant | None:
        raw = self.store.get(self.name, "")
        if not raw:
            return None
        return PermissionGrant.decode(raw)


def _is_root() -> bool:
    return os.geteuid() == 0


class SessionRelaxer:
    """Lift the kernel perf_event restriction until the next reboot."""

    def __init__(
        self,
        store: PropertyStore,
        paranoid_path: Path,
        *,
        is_root: Callable[[], bool] = _is_root,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.paranoid_path = paranoid_path
        self.is_root = is_root
        self.sleep = sleep

    def _read_paranoid(self) -> int | None:
        try:
            return int(self.paranoid_path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None

    def relax(self) -> str:
        """Return how profiling became allowed, or raise PermissionGrantError."""

        if self.is_root():
            return "root"
        paranoid = self._read_paranoid()
        if paranoid is not None and paranoid <= 1:
            return "perf_event_paranoid"

        harden = self.store.get(PERF_HARDEN_PROPERTY, "")
        if harden:
            if harden == "0":
                return "perf_harden"
            try:
                self.store.set(PERF_HARDEN_PROPERTY, "0")
            except PropertyWriteError as exc:
                logger.warning("failed to set %s: %s", PERF_HARDEN_PROPERTY, exc)
            else:
                # The property service applies the change asynchronously.
                self.sleep(1)
                paranoid = self._read_paranoid()
                if paranoid is not None and paranoid <= 1:
                    return "perf_harden"
                if self.store.get(PERF_HARDEN_PROPERTY, "") == "0":
                    return "perf_harden"
            raise PermissionGrantError(
                "profiling is restricted by security.perf_harden",
                hint="Try using `adb shell setprop security.perf_harden 0` to allow profiling.",
                perf_event_paranoid=paranoid,
            )

        if paranoid is not None:
            raise PermissionGrantError(
                f"{self.paranoid_path} is {paranoid}, which disallows profiling by non-root users",
                hint=f"Try using `echo -1 >{self.paranoid_path}` as root to allow profiling.",
                perf_event_paranoid=paranoid,
            )
        return "unrestricted"


@dataclass(frozen=True)
class PrepareResult:
    policy: str
    tracepoints: int
    grant: PermissionGrant | None = None
    relaxation: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"policy": self.policy, "tracepoints": self.tracepoints}
        if self.grant is not None:
            payload.update(self.grant.to_dict())
        if self.relaxation is not None:
            payload["relaxation"] = self.relaxation
        return payload


class PermissionGrantor:
    """Apply exactly one permission policy, then rewrite the tracepoint list."""

    def __init__(
        self,
        grants: GrantStore,
        resolver: UidResolver,
        relaxer: SessionRelaxer,
        exporter: TracepointExporter,
        *,
        android_version: Callable[[], int],
        min_durable_version: int = 13,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.grants = grants
        self.resolver = resolver
        self.relaxer = relaxer
        self.exporter = exporter
        self.android_version = android_version
        self.min_durable_version = min_durable_version
        self.clock = clock

    def supports_durable_grants(self) -> bool:
        return self.android_version() >= self.min_durable_version

    def prepare(self, app_name: str | None, days: int) -> PrepareResult:
        """Grant profiling permission for `app_name` and export tracepoints."""

        if app_name and days > 0 and self.supports_durable_grants():
            expiration = compute_expiration(int(self.clock()), days)
            grant = PermissionGrant(uid=self.resolver.resolve_uid(app_name), expiration_time=expiration)
            self.grants.save(grant)
            logger.info("granted profiling to uid %d until %s", grant.uid, grant.to_dict()["expiration_time"])
            result = PrepareResult(policy=POLICY_DURABLE_GRANT, tracepoints=0, grant=grant)
        else:
            relaxation = self.relaxer.relax()
            logger.info("profiling allowed for this boot (%s)", relaxation)
            result = PrepareResult(policy=POLICY_SESSION_RELAXATION, tracepoints=0, relaxation=relaxation)

        return replace(result, tracepoints=self.exporter.export())
