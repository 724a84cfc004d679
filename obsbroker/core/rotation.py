"""Credential rotation with compensating rollback.

A rotation runs as two explicit phases:

    commit  - write the new value into the secret record
    apply   - push the new value to the live service

If *apply* fails, a compensating write restores the previous value.  The
outcome of every rotation is one of:

    APPLIED       storage and live service both hold the new value
    ROLLED_BACK   apply failed, storage holds the old value again
    INCONSISTENT  apply failed and the compensating write failed too;
                  storage holds the new value, the live service the old one

Rotations of the same key are not serialised here; callers that may rotate
concurrently must serialise externally.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from obsbroker.core.cluster import SecretRef, SecretStore
from obsbroker.core.exceptions import ApplyFailed, CompensationFailed

logger = logging.getLogger("obsbroker.core.rotation")

ApplyFn = Callable[[bytes], None]


class RotationOutcome(enum.Enum):
    APPLIED = "applied"
    ROLLED_BACK = "rolled_back"
    INCONSISTENT = "inconsistent"


@dataclass(slots=True)
class RotationAttempt:
    """Record of one rotation call.  Never persisted."""

    resource: SecretRef
    key: str
    old_value: Optional[bytes] = field(repr=False)
    new_value: bytes = field(repr=False)
    outcome: Optional[RotationOutcome] = None
    apply_error: Optional[ApplyFailed] = None
    compensation_error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is RotationOutcome.APPLIED

    def raise_for_outcome(self) -> None:
        """Raise the error matching the outcome; do nothing on success."""
        if self.outcome is RotationOutcome.INCONSISTENT:
            assert self.apply_error is not None and self.compensation_error is not None
            raise CompensationFailed(self.apply_error, self.compensation_error) from self.compensation_error
        if self.outcome is RotationOutcome.ROLLED_BACK:
            assert self.apply_error is not None
            raise self.apply_error


class RotationCoordinator:
    """Rotates a single key of a secret record and applies it to a live service."""

    def __init__(self, store: SecretStore) -> None:
        self._store = store

    def rotate(self, resource: SecretRef, key: str, new_value: bytes, apply: ApplyFn) -> RotationAttempt:
        """Rotate *key* to *new_value*.

        Raises :class:`ResourceNotFound` if the record is missing,
        :class:`ApplyFailed` if the live apply failed and the previous value
        was restored, and :class:`CompensationFailed` if restoring failed
        as well.
        """
        attempt = self.run(resource, key, new_value, apply)
        attempt.raise_for_outcome()
        return attempt

    def run(self, resource: SecretRef, key: str, new_value: bytes, apply: ApplyFn) -> RotationAttempt:
        """Same as :meth:`rotate` but reports apply failures in the returned attempt."""
        attempt = self._commit(resource, key, new_value)

        try:
            apply(new_value)
        except Exception as exc:
            attempt.apply_error = ApplyFailed(
                f"Could not apply new value of {key!r} from secret {resource}: {exc}",
                namespace=resource.namespace,
                name=resource.name,
                key=key,
            )
            attempt.apply_error.__cause__ = exc
            logger.warning("Applying %s/%s failed, restoring previous value: %s", resource, key, exc)
            self._compensate(attempt)
            return attempt

        attempt.outcome = RotationOutcome.APPLIED
        logger.info("Rotated %s in secret %s", key, resource)
        return attempt

    # -- phases ------------------------------------------------------------

    def _commit(self, resource: SecretRef, key: str, new_value: bytes) -> RotationAttempt:
        record = self._store.get_secret(resource.namespace, resource.name)
        attempt = RotationAttempt(
            resource=resource,
            key=key,
            old_value=record.data.get(key),
            new_value=bytes(new_value),
        )
        updated = record.copy()
        updated.data[key] = attempt.new_value
        self._store.put_secret(updated)
        logger.debug("Stored new value for %s in secret %s", key, resource)
        return attempt

    def _compensate(self, attempt: RotationAttempt) -> None:
        resource = attempt.resource
        try:
            record = self._store.get_secret(resource.namespace, resource.name).copy()
            if attempt.old_value is None:
                record.data.pop(attempt.key, None)
            else:
                record.data[attempt.key] = attempt.old_value
            self._store.put_secret(record)
        except Exception as exc:
            attempt.compensation_error = exc
            attempt.outcome = RotationOutcome.INCONSISTENT
            logger.critical(
                "Secret %s key %s no longer matches the live service: restoring the "
                "previous value failed: %s",
                resource,
                attempt.key,
                exc,
            )
            return

        attempt.outcome = RotationOutcome.ROLLED_BACK
        logger.info("Restored previous value of %s in secret %s", attempt.key, resource)
