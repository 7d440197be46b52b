"""In-memory bookkeeping of the cloud resources a workflow run created."""

from __future__ import annotations

from collections.abc import Iterator

from loguru import logger

from chainward.types import ResourceKind, ResourceRecord

log = logger.bind(component="tracker")


class ResourceTracker:
    """Records created resources keyed by ``(provider, kind)``.

    Only one resource of a kind is tracked per provider: registering again
    replaces the previous record and moves it to the end of the registration
    order. The tracker never talks to a provider; teardown reads it in reverse.

    Example:
        >>> tracker = ResourceTracker()
        >>> tracker.register(ResourceKind.KEY, "aws", "chainward-aws-key")
        >>> tracker.lookup(ResourceKind.KEY, "aws")
        'chainward-aws-key'
    """

    __slots__ = ("_records",)

    def __init__(self) -> None:
        self._records: dict[tuple[str, ResourceKind], ResourceRecord] = {}

    def register(self, kind: ResourceKind, provider: str, resource_id: str) -> ResourceRecord:
        key = (provider, kind)
        previous = self._records.pop(key, None)
        if previous is not None:
            log.debug("Replacing tracked {previous} with {id}", previous=previous, id=resource_id)
        record = ResourceRecord(kind=kind, provider=provider, id=resource_id)
        self._records[key] = record
        log.debug("Tracking {record}", record=record)
        return record

    def lookup(self, kind: ResourceKind, provider: str) -> str | None:
        record = self._records.get((provider, kind))
        return record.id if record else None

    def discard(self, record: ResourceRecord) -> None:
        """Forget a record, but only if it is still the tracked one."""
        key = (record.provider, record.kind)
        if self._records.get(key) == record:
            del self._records[key]

    def records(self) -> tuple[ResourceRecord, ...]:
        """All records in registration order."""
        return tuple(self._records.values())

    def __iter__(self) -> Iterator[ResourceRecord]:
        return iter(self.records())

    def __len__(self) -> int:
        return len(self._records)

    def __bool__(self) -> bool:
        return bool(self._records)
