"""Service doing the relay's regular tasks.

It keeps the head slot up to date, refreshes proposer duties and copies
validator registrations into the cache.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

SLOTS_PER_EPOCH = 32
STATS_FIELD_LATEST_SLOT = "latest_slot"
_UINT64_MODULUS = 1 << 64


def slot_pos(slot: int) -> int:
    """Position of a slot within its epoch, counting from 1."""
    return slot % SLOTS_PER_EPOCH + 1


class ServerAlreadyStartedError(RuntimeError):
    """Raised when a service is started a second time."""

    def __init__(self, message: str = "server was already started") -> None:
        super().__init__(message)


@dataclass(frozen=True)
class ProposerDuty:
    """A proposer duty as reported by a beacon node."""

    pubkey: str
    slot: int
    validator_index: int


@dataclass(frozen=True)
class ProposerDutyEntry:
    """A proposer duty joined with the validator's signed registration."""

    slot: int
    validator_index: int
    entry: Any


def _spawn_thread(func: Callable[..., Any], *args: Any) -> None:
    threading.Thread(target=func, args=args, daemon=True).start()


@dataclass
class HousekeeperOpts:
    """Dependencies of the housekeeper.

    ``beacon_client`` offers ``best_sync_status()``, ``get_proposer_duties(epoch)``
    and ``subscribe_to_head_events(queue)``; ``db`` offers
    ``get_validator_registrations_for_pubkeys(pubkeys)`` and
    ``get_latest_validator_registrations(timestamp_only)``; ``redis`` offers
    ``set_stats(field, value)``, ``set_proposer_duties(duties)`` and
    ``set_validator_registration_timestamp_if_newer(pubkey, timestamp)``.
    ``spawn`` runs a function in the background.
    """

    redis: Any
    db: Any
    beacon_client: Any
    log: logging.Logger | None = None
    spawn: Callable[..., None] = field(default=_spawn_thread)


class Housekeeper:
    """Runs the regular relay tasks for every new head slot."""

    def __init__(self, opts: HousekeeperOpts) -> None:
        self.opts = opts
        self.log = opts.log or logging.getLogger(__name__)
        self.redis = opts.redis
        self.db = opts.db
        self.beacon_client = opts.beacon_client
        self.head_slot = 0
        self.proposer_duties_slot = 0
        self._started = threading.Lock()
        self._updating_duties = threading.Lock()
        self._head_lock = threading.Lock()

    def start(self) -> None:
        """Process the current head and then every head event; blocks.

        Returns when the head event queue yields ``None``.
        """
        if not self._started.acquire(blocking=False):
            raise ServerAlreadyStartedError()
        try:
            status = self.beacon_client.best_sync_status()
            self.opts.spawn(self.update_validator_registrations_in_redis)
            self.process_new_slot(status.head_slot)

            events: queue.Queue = queue.Queue()
            self.beacon_client.subscribe_to_head_events(events)
            while (event := events.get()) is not None:
                self.process_new_slot(event.slot)
        finally:
            self._started.release()

    def process_new_slot(self, head_slot: int) -> None:
        """Record a new head slot; older or equal slots are ignored."""
        with self._head_lock:
            prev_head_slot = self.head_slot
            if head_slot <= prev_head_slot:
                return
            self.head_slot = head_slot

        context = f"headSlot={head_slot} headSlotPos={slot_pos(head_slot)} prevHeadSlot={prev_head_slot}"
        if prev_head_slot > 0:
            for missed in range(prev_head_slot + 1, head_slot):
                self.log.warning("missed slot: %d (%s)", missed, context)

        self.opts.spawn(self.update_proposer_duties, head_slot)

        try:
            self.redis.set_stats(STATS_FIELD_LATEST_SLOT, head_slot)
        except Exception:
            self.log.exception("failed to set stats (%s)", context)

        epoch = head_slot // SLOTS_PER_EPOCH
        self.log.info(
            "updated headSlot to %d (epoch=%d slotStartNextEpoch=%d %s)",
            head_slot,
            epoch,
            (epoch + 1) * SLOTS_PER_EPOCH,
            context,
        )

    def update_proposer_duties(self, head_slot: int) -> None:
        """Refresh proposer duties every half epoch; one update at a time."""
        if not self._updating_duties.acquire(blocking=False):
            return
        try:
            half_epoch = SLOTS_PER_EPOCH // 2
            since_last = (head_slot - self.proposer_duties_slot) % _UINT64_MODULUS
            if head_slot % half_epoch != 0 and since_last < half_epoch:
                return
            self.update_proposer_duties_without_checks(head_slot)
        finally:
            self._updating_duties.release()

    def update_proposer_duties_without_checks(self, head_slot: int) -> list[ProposerDutyEntry] | None:
        """Store duties of registered validators for this and the next epoch.

        Returns the stored duties, or ``None`` when nothing was stored.
        """
        epoch = head_slot // SLOTS_PER_EPOCH
        context = f"epochFrom={epoch} epochTo={epoch + 1}"
        self.log.debug("updating proposer duties... (%s)", context)

        try:
            entries = list(self.beacon_client.get_proposer_duties(epoch))
        except Exception:
            self.log.exception("failed to get proposer duties for all beacon nodes (%s)", context)
            return None

        try:
            next_entries = self.beacon_client.get_proposer_duties(epoch + 1)
        except Exception:
            self.log.exception(
                "failed to get proposer duties for next epoch for all beacon nodes (%s)", context
            )
        else:
            if next_entries is not None:
                entries.extend(next_entries)

        pubkeys = [duty.pubkey for duty in entries]
        try:
            registration_entries = self.db.get_validator_registrations_for_pubkeys(pubkeys)
        except Exception:
            self.log.exception("failed to get validator registrations (%s)", context)
            return None

        signed_registrations: dict[str, Any] = {}
        for registration in registration_entries:
            try:
                signed_registrations[registration.pubkey] = registration.to_signed_validator_registration()
            except Exception:
                self.log.exception(
                    "failed to convert validator registration entry to signed validator registration (%s)",
                    context,
                )

        proposer_duties = [
            ProposerDutyEntry(slot=duty.slot, validator_index=duty.validator_index, entry=signed)
            for duty in entries
            if (signed := signed_registrations.get(duty.pubkey)) is not None
        ]

        try:
            self.redis.set_proposer_duties(proposer_duties)
        except Exception:
            self.log.exception("failed to set proposer duties (%s)", context)
            return None
        self.proposer_duties_slot = head_slot

        slots = sorted(str(duty.slot) for duty in proposer_duties)
        self.log.info(
            "proposer duties updated: %s (numDuties=%d %s)", ", ".join(slots), len(slots), context
        )
        return proposer_duties

    def update_validator_registrations_in_redis(self) -> None:
        """Copy the latest registration timestamps from the database to the cache."""
        try:
            registrations = self.db.get_latest_validator_registrations(True)
        except Exception:
            self.log.exception("failed to get latest validator registrations")
            return

        self.log.info("updating %d validator registrations in Redis...", len(registrations))
        started = time.monotonic()
        for registration in registrations:
            try:
                self.redis.set_validator_registration_timestamp_if_newer(
                    registration.pubkey.lower(), registration.timestamp
                )
            except Exception:
                self.log.exception("failed to set validator registration")
        self.log.info(
            "updating %d validator registrations in Redis done - %f sec",
            len(registrations),
            time.monotonic() - started,
        )