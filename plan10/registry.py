"""Server registry - durable catalog of named hosts, persisted as YAML."""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Iterable, Iterator, Optional

import yaml
from pydantic import ValidationError as PydanticValidationError

from .errors import ConfigError, DuplicateName, NotFound
from .models import ServerRecord, TargetSelector

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class ServerRegistry:
    """Insertion-ordered catalog of :class:`ServerRecord` keyed by name.

    The file is read once when the registry is created. Every mutation is
    serialized behind a lock and rewritten atomically (temporary file in the
    same directory, then ``os.replace``) before the call returns, so a crash
    mid-write leaves the previous file intact.

    Args:
        path: Location of the YAML registry file. A missing file is an
            empty registry; it is created on the first mutation.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._records: dict[str, ServerRecord] = self._load()

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def get(self, name: str) -> Optional[ServerRecord]:
        return self._records.get(name)

    def list(self, tags: Optional[Iterable[str]] = None) -> list[ServerRecord]:
        """Records carrying every tag in ``tags`` (all records if empty)."""
        wanted = frozenset(tags or ())
        return [r for r in self._records.values() if wanted <= r.tags]

    def resolve(self, name_or_host: str) -> Optional[ServerRecord]:
        """Exact name match first, then the first record with that host."""
        record = self._records.get(name_or_host)
        if record is not None:
            return record
        return next((r for r in self._records.values() if r.host == name_or_host), None)

    def select(self, selector: TargetSelector) -> list[ServerRecord]:
        """
        Resolve a selector into an ordered list of targets.

        Explicit names must all exist; the tag filter then narrows the
        candidates. Disabled records are dropped unless the selector
        includes them.

        Raises:
            NotFound: If an explicitly named server is not registered
        """
        if selector.names:
            missing = [n for n in selector.names if n not in self._records]
            if missing:
                raise NotFound(missing[0])
            seen: dict[str, ServerRecord] = {}
            for name in selector.names:
                seen.setdefault(name, self._records[name])
            candidates = [r for r in seen.values() if selector.tags <= r.tags]
        else:
            candidates = self.list(selector.tags)

        if selector.include_disabled:
            return candidates

        targets = []
        for record in candidates:
            if record.enabled:
                targets.append(record)
            else:
                logger.info("Skipping disabled server %s", record.name)
        return targets

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[ServerRecord]:
        return iter(list(self._records.values()))

    def __contains__(self, name: object) -> bool:
        return name in self._records

    # ------------------------------------------------------------------ #
    # Mutations
    # ------------------------------------------------------------------ #

    def add(self, record: ServerRecord) -> None:
        with self._lock:
            if record.name in self._records:
                raise DuplicateName(record.name)
            updated = dict(self._records)
            updated[record.name] = record
            self._commit(updated)
        logger.info("Added server %s (%s)", record.name, record.address)

    def update(self, record: ServerRecord) -> None:
        """Replace an existing record in place, keeping its position."""
        with self._lock:
            if record.name not in self._records:
                raise NotFound(record.name)
            updated = dict(self._records)
            updated[record.name] = record
            self._commit(updated)
        logger.info("Updated server %s", record.name)

    def set_enabled(self, name: str, enabled: bool) -> ServerRecord:
        with self._lock:
            record = self._records.get(name)
            if record is None:
                raise NotFound(name)
            changed = record.model_copy(update={"enabled": enabled})
            updated = dict(self._records)
            updated[name] = changed
            self._commit(updated)
        logger.info("%s server %s", "Enabled" if enabled else "Disabled", name)
        return changed

    def remove(self, name: str) -> None:
        with self._lock:
            if name not in self._records:
                raise NotFound(name)
            updated = {k: v for k, v in self._records.items() if k != name}
            self._commit(updated)
        logger.info("Removed server %s", name)

    # ------------------------------------------------------------------ #
    # Persistence
    # ------------------------------------------------------------------ #

    def _load(self) -> dict[str, ServerRecord]:
        if not self.path.exists():
            logger.debug("Registry %s does not exist yet; starting empty", self.path)
            return {}

        try:
            with self.path.open("r", encoding="utf-8") as fh:
                document = yaml.safe_load(fh)
        except yaml.YAMLError as e:
            raise ConfigError(f"Registry {self.path} is not valid YAML: {e}") from e
        except OSError as e:
            raise ConfigError(f"Cannot read registry {self.path}: {e}") from e

        if document is None:
            return {}
        if not isinstance(document, dict) or not isinstance(document.get("servers", []), list):
            raise ConfigError(f"Registry {self.path} must be a mapping with a 'servers' list")

        records: dict[str, ServerRecord] = {}
        for index, entry in enumerate(document.get("servers") or []):
            try:
                record = ServerRecord.model_validate(entry)
            except PydanticValidationError as e:
                raise ConfigError(f"Registry {self.path}: invalid server #{index}: {e}") from e
            if record.name in records:
                raise ConfigError(f"Registry {self.path}: duplicate server name '{record.name}'")
            records[record.name] = record

        logger.debug("Loaded %d server(s) from %s", len(records), self.path)
        return records

    def _commit(self, records: dict[str, ServerRecord]) -> None:
        """Persist ``records`` atomically, then make them the live state."""
        document = {
            "version": SCHEMA_VERSION,
            "servers": [r.to_document() for r in records.values()],
        }
        directory = self.path.parent
        tmp_path = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", delete=False, dir=directory, prefix=f".{self.path.name}.", suffix=".tmp", encoding="utf-8"
            ) as tf:
                tmp_path = tf.name
                yaml.safe_dump(document, tf, sort_keys=False, default_flow_style=False)
                tf.flush()
                os.fsync(tf.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise ConfigError(f"Cannot write registry {self.path}: {e}") from e
        self._records = records
