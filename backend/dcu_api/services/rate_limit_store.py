"""Per-IP request counters and the IP blacklist.

``RateLimitStore`` is the contract shared by the in-process backend below
and the Redis backend in ``redis_rate_limit_store``. A store instance is
bound to one route group (its ``namespace``) and one ``RateLimitConfig``;
the blacklist is shared by every namespace of a backend.
"""

import asyncio
import dataclasses
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from dcu_api.core.timeutils import Clock, as_utc, utcnow

logger = logging.getLogger(__name__)

# An IP is blacklisted once it has this many recorded violations
BLACKLIST_VIOLATION_THRESHOLD = 3

# Records untouched for longer than this are dropped by cleanup
RECORD_RETENTION = timedelta(hours=24)

RECORDS_FILENAME = "rate-limits.json"
BLACKLIST_FILENAME = "blacklist.json"


class RateLimitError(Exception):
    """Base rate limit store error."""

    pass


class IPBlacklistedError(RateLimitError):
    """The client IP is on the blacklist."""

    def __init__(self, ip: str):
        super().__init__("IP is blacklisted")
        self.ip = ip


class RateLimitStorageError(RateLimitError):
    """The counter backend could not be read or written."""

    pass


@dataclass(frozen=True)
class RateLimitConfig:
    """Limits and windows for one route group."""

    authenticated_limit: int
    unauthenticated_limit: int
    auth_window_seconds: int
    unauth_window_seconds: int

    def __post_init__(self) -> None:
        for field in dataclasses.fields(self):
            value = getattr(self, field.name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValueError(
                    f"Invalid rate limit configuration: {field.name} must be a positive integer"
                )

    def limit_for(self, is_authenticated: bool) -> int:
        return self.authenticated_limit if is_authenticated else self.unauthenticated_limit

    def window_for(self, is_authenticated: bool) -> int:
        return self.auth_window_seconds if is_authenticated else self.unauth_window_seconds


@dataclass
class RateLimitRecord:
    """Request counter for one IP within one route group."""

    ip: str
    requests: int
    last_reset: datetime
    is_authenticated: bool
    violations: int = 0

    def window_elapsed(self, config: RateLimitConfig, now: datetime) -> bool:
        window = timedelta(seconds=config.window_for(self.is_authenticated))
        return now > self.last_reset + window

    def reset(self, now: datetime) -> None:
        self.requests = 0
        self.last_reset = now
        self.violations = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "ip": self.ip,
            "requests": self.requests,
            "lastReset": self.last_reset.isoformat(),
            "isAuthenticated": self.is_authenticated,
            "violations": self.violations,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RateLimitRecord":
        return cls(
            ip=str(data["ip"]),
            requests=int(data["requests"]),
            last_reset=as_utc(datetime.fromisoformat(data["lastReset"])),
            is_authenticated=bool(data["isAuthenticated"]),
            violations=int(data.get("violations", 0)),
        )


class RateLimitStore(ABC):
    """Counter storage for one route group.

    Every mutation of a given key is serialized by the backend, so
    concurrent requests from one IP never lose increments.
    """

    def __init__(self, config: RateLimitConfig, namespace: str = "default", clock: Clock = utcnow):
        self.config = config
        self.namespace = namespace
        self._clock = clock

    def key_for(self, ip: str) -> str:
        return f"{self.namespace}:{ip}"

    @abstractmethod
    async def get_record(self, ip: str) -> RateLimitRecord | None:
        """Return the IP's record, resetting it first if its window has elapsed.

        Raises:
            IPBlacklistedError: the IP is blacklisted (checked before anything else)
        """

    @abstractmethod
    async def increment_record(self, ip: str, is_authenticated: bool) -> RateLimitRecord:
        """Count one request and return the updated record.

        Going over the limit counts a violation; reaching
        ``BLACKLIST_VIOLATION_THRESHOLD`` violations blacklists the IP.

        Raises:
            IPBlacklistedError: the IP was already blacklisted
        """

    @abstractmethod
    async def reset_record(self, ip: str) -> None:
        """Zero the IP's counters and restart its window."""

    @abstractmethod
    async def cleanup_old_records(self) -> int:
        """Drop records whose window started more than 24h ago. Returns count removed."""

    @abstractmethod
    async def add_to_blacklist(self, ip: str) -> None: ...

    @abstractmethod
    async def remove_from_blacklist(self, ip: str) -> None: ...

    @abstractmethod
    async def is_blacklisted(self, ip: str) -> bool: ...


class LocalCounterBackend:
    """Counters and blacklist held in process memory.

    With a ``data_dir`` the state is also written to ``rate-limits.json`` and
    ``blacklist.json`` after every change and reloaded by ``load()``, so it
    survives restarts. Without one the state is ephemeral.
    """

    def __init__(self, data_dir: Path | str | None = None):
        self.data_dir = Path(data_dir) if data_dir is not None else None
        self.records: dict[str, RateLimitRecord] = {}
        self.blacklist: set[str] = set()
        self.lock = asyncio.Lock()
        self._loaded = False

    @property
    def records_path(self) -> Path | None:
        return self.data_dir / RECORDS_FILENAME if self.data_dir else None

    @property
    def blacklist_path(self) -> Path | None:
        return self.data_dir / BLACKLIST_FILENAME if self.data_dir else None

    async def load(self) -> None:
        """Read persisted state. Missing or unreadable files start empty."""
        if self.data_dir is None or self._loaded:
            self._loaded = True
            return
        async with self.lock:
            if self._loaded:
                return
            records, blacklist = await asyncio.to_thread(self._read_files)
            self.records = records
            self.blacklist = blacklist
            self._loaded = True
        logger.info(
            f"Loaded {len(self.records)} rate limit record(s) and "
            f"{len(self.blacklist)} blacklisted IP(s) from {self.data_dir}"
        )

    def _read_files(self) -> tuple[dict[str, RateLimitRecord], set[str]]:
        assert self.records_path is not None and self.blacklist_path is not None
        self.data_dir.mkdir(parents=True, exist_ok=True)

        records: dict[str, RateLimitRecord] = {}
        try:
            raw = json.loads(self.records_path.read_text(encoding="utf-8"))
            for key, data in raw.items():
                records[key] = RateLimitRecord.from_dict(data)
        except FileNotFoundError:
            pass
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable rate limit records file: {e}")

        blacklist: set[str] = set()
        try:
            blacklist = {str(ip) for ip in json.loads(self.blacklist_path.read_text(encoding="utf-8"))}
        except FileNotFoundError:
            pass
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"Ignoring unreadable blacklist file: {e}")

        return records, blacklist

    @staticmethod
    def _write_json(path: Path, payload: Any) -> None:
        """Write ``payload`` to ``path`` atomically (temp file + rename)."""
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def persist_records(self) -> None:
        """Flush records to disk. Call with ``lock`` held."""
        if self.records_path is None:
            return
        snapshot = {key: record.to_dict() for key, record in self.records.items()}
        try:
            await asyncio.to_thread(self._write_json, self.records_path, snapshot)
        except OSError as e:
            logger.error(f"Failed to save rate limit records: {e}")
            raise RateLimitStorageError("Failed to save rate limit records") from e

    async def persist_blacklist(self) -> None:
        """Flush the blacklist to disk. Call with ``lock`` held."""
        if self.blacklist_path is None:
            return
        snapshot = sorted(self.blacklist)
        try:
            await asyncio.to_thread(self._write_json, self.blacklist_path, snapshot)
        except OSError as e:
            logger.error(f"Failed to save blacklist: {e}")
            raise RateLimitStorageError("Failed to save blacklist") from e


class LocalRateLimitStore(RateLimitStore):
    """``RateLimitStore`` over a ``LocalCounterBackend``.

    All stores sharing a backend share one lock, which serializes every
    read-modify-write.
    """

    def __init__(
        self,
        backend: LocalCounterBackend,
        config: RateLimitConfig,
        namespace: str = "default",
        clock: Clock = utcnow,
    ):
        super().__init__(config, namespace, clock)
        self.backend = backend

    async def _current(self, ip: str) -> RateLimitRecord | None:
        """Blacklist check plus lazy window reset. Caller holds the lock."""
        if ip in self.backend.blacklist:
            raise IPBlacklistedError(ip)

        record = self.backend.records.get(self.key_for(ip))
        if record is None:
            return None

        now = self._clock()
        if record.window_elapsed(self.config, now):
            record.reset(now)
            await self.backend.persist_records()
        return record

    async def get_record(self, ip: str) -> RateLimitRecord | None:
        await self.backend.load()
        async with self.backend.lock:
            record = await self._current(ip)
            return dataclasses.replace(record) if record else None

    async def increment_record(self, ip: str, is_authenticated: bool) -> RateLimitRecord:
        await self.backend.load()
        async with self.backend.lock:
            record = await self._current(ip)
            if record is None:
                record = RateLimitRecord(
                    ip=ip,
                    requests=0,
                    last_reset=self._clock(),
                    is_authenticated=is_authenticated,
                )
                self.backend.records[self.key_for(ip)] = record

            record.requests += 1
            record.is_authenticated = is_authenticated

            if record.requests > self.config.limit_for(is_authenticated):
                record.violations += 1
                logger.warning(
                    f"Rate limit violation {record.violations} for {ip} ({self.namespace})"
                )
                if record.violations >= BLACKLIST_VIOLATION_THRESHOLD:
                    await self._blacklist(ip)

            await self.backend.persist_records()
            return dataclasses.replace(record)

    async def reset_record(self, ip: str) -> None:
        await self.backend.load()
        async with self.backend.lock:
            record = self.backend.records.get(self.key_for(ip))
            if record is not None:
                record.reset(self._clock())
                await self.backend.persist_records()

    async def cleanup_old_records(self) -> int:
        await self.backend.load()
        cutoff = self._clock() - RECORD_RETENTION
        prefix = f"{self.namespace}:"
        async with self.backend.lock:
            stale = [
                key
                for key, record in self.backend.records.items()
                if key.startswith(prefix) and record.last_reset < cutoff
            ]
            for key in stale:
                del self.backend.records[key]
            if stale:
                await self.backend.persist_records()
                logger.info(f"Removed {len(stale)} stale rate limit record(s) ({self.namespace})")
        return len(stale)

    async def _blacklist(self, ip: str) -> None:
        if ip not in self.backend.blacklist:
            self.backend.blacklist.add(ip)
            logger.warning(f"IP {ip} blacklisted after repeated rate limit violations")
            await self.backend.persist_blacklist()

    async def add_to_blacklist(self, ip: str) -> None:
        await self.backend.load()
        async with self.backend.lock:
            await self._blacklist(ip)

    async def remove_from_blacklist(self, ip: str) -> None:
        await self.backend.load()
        async with self.backend.lock:
            if ip in self.backend.blacklist:
                self.backend.blacklist.discard(ip)
                logger.info(f"IP {ip} removed from blacklist")
                await self.backend.persist_blacklist()

    async def is_blacklisted(self, ip: str) -> bool:
        await self.backend.load()
        return ip in self.backend.blacklist
