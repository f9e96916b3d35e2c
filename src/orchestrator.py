"""
zkTLS Snapshot - Orchestration State Machine

The SnapshotCoordinator sequences one snapshot run:

    IDLE -> PROVIDER_DETECTED -> LOGIN_VERIFIED -> CAPTURING
         -> CAPTURED | CAPTURED_UNATTESTED -> COMMITTING -> ENCRYPTING
         -> PERSISTED -> PUBLISHED

with ABORTED reachable from any non-terminal state. Callers talk to it through
typed messages and always receive a Response; internal exceptions are turned
into ``aborted(reason)`` outcomes and never escape.

Concurrency:
- At most one run per (owner, provider) is in flight; a second request gets
  ``busy``.
- Every suspension point (capture, verification key load, storage) runs on a
  worker thread with a timeout. A timeout aborts the run with ``timeout``.
- EndSession drops the run's encryption key immediately and cancels it. A run
  either persists a consistent (ciphertext, record) pair or leaves nothing.
"""

import json
import logging
import threading
import time
import uuid
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from attestation import attestation_proof_hash
from capture import AttestationCaptureService, CaptureResult
from commitment import DEFAULT_SCHEME, commit, generate_randomness
from encryption import PBKDF2_ITERATIONS, KeySlot, derive_key
from errors import DecryptionError, InvalidTransition, PublishFailure, SnapshotError
from metadata_client import MetadataClient
from models import (
    SNAPSHOT_VERSION,
    PublicRecord,
    SnapshotSecret,
    SnapshotStatus,
    VerificationMethod,
    new_snapshot_id,
)
from monitoring import metrics
from monitoring.logging import LoggingContext
from providers.base import PageHandle, ProviderCapability, ProviderRegistry
from storage.snapshots import SnapshotStore
from verifier import AttestationVerifier, Predicate, raise_for_result

logger = logging.getLogger(__name__)

CANCEL_POLL_INTERVAL = 0.05


class RunState(Enum):
    IDLE = "idle"
    PROVIDER_DETECTED = "provider_detected"
    LOGIN_VERIFIED = "login_verified"
    CAPTURING = "capturing"
    CAPTURED = "captured"
    CAPTURED_UNATTESTED = "captured_unattested"
    COMMITTING = "committing"
    ENCRYPTING = "encrypting"
    PERSISTED = "persisted"
    PUBLISHED = "published"
    ABORTED = "aborted"


TERMINAL_STATES = frozenset({RunState.PUBLISHED, RunState.ABORTED})

TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.IDLE: frozenset({RunState.PROVIDER_DETECTED}),
    RunState.PROVIDER_DETECTED: frozenset({RunState.LOGIN_VERIFIED}),
    RunState.LOGIN_VERIFIED: frozenset({RunState.CAPTURING}),
    RunState.CAPTURING: frozenset({RunState.CAPTURED, RunState.CAPTURED_UNATTESTED}),
    RunState.CAPTURED: frozenset({RunState.COMMITTING}),
    RunState.CAPTURED_UNATTESTED: frozenset({RunState.COMMITTING}),
    RunState.COMMITTING: frozenset({RunState.ENCRYPTING}),
    RunState.ENCRYPTING: frozenset({RunState.PERSISTED}),
    RunState.PERSISTED: frozenset({RunState.PUBLISHED}),
    RunState.PUBLISHED: frozenset(),
    RunState.ABORTED: frozenset(),
}


class RunStatus(Enum):
    """What a caller is told about a run."""
    SUCCESS = "success"
    DEGRADED_SUCCESS = "degraded_success"
    BUSY = "busy"
    ABORTED = "aborted"


class RunAborted(Exception):
    """Internal control flow: stop the current run with ``reason``."""

    def __init__(self, reason: str, message: str | None = None):
        super().__init__(message or reason)
        self.reason = reason


# =============================================================================
# Messages
# =============================================================================

@dataclass(frozen=True)
class CheckProvider:
    page: PageHandle


@dataclass(frozen=True)
class CreateSnapshot:
    owner: str
    signature: str
    page: PageHandle
    provider_id: str | None = None
    predicate: Predicate | None = None


@dataclass(frozen=True)
class ListSnapshots:
    owner: str
    signature: str


@dataclass(frozen=True)
class RevokeSnapshot:
    owner: str
    signature: str
    snapshot_id: str
    reason: str | None = None


@dataclass(frozen=True)
class RetryPublish:
    signature: str | None = None
    owner: str | None = None


@dataclass(frozen=True)
class EndSession:
    owner: str


Message = CheckProvider | CreateSnapshot | ListSnapshots | RevokeSnapshot | RetryPublish | EndSession


@dataclass
class Response:
    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "data": self.data, "error": self.error}


# =============================================================================
# Runs
# =============================================================================

@dataclass
class OrchestrationRun:
    owner: str
    provider_id: str
    clock: Callable[[], float] = time.time
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: RunState = RunState.IDLE
    history: list[tuple[str, float]] = field(default_factory=list)
    key_slot: KeySlot = field(default_factory=KeySlot)
    _cancelled: threading.Event = field(default_factory=threading.Event)

    def __post_init__(self):
        self.history.append((self.state.value, self.clock()))

    def transition(self, to_state: RunState) -> None:
        """
        Raises:
            InvalidTransition: If the state table does not allow the move
        """
        allowed = TRANSITIONS[self.state]
        if to_state == RunState.ABORTED and self.state not in TERMINAL_STATES:
            allowed = allowed | {RunState.ABORTED}
        if to_state not in allowed:
            raise InvalidTransition(self.state.value, to_state.value)
        logger.debug(f"Run {self.run_id}: {self.state.value} -> {to_state.value}")
        self.state = to_state
        self.history.append((to_state.value, self.clock()))

    def cancel(self) -> None:
        self._cancelled.set()
        self.key_slot.clear()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def checkpoint(self) -> None:
        if self.cancelled:
            raise RunAborted("cancelled", "Session ended during the run")


@dataclass
class RunOutcome:
    status: RunStatus
    state: RunState | None = None
    reason: str | None = None
    run_id: str | None = None
    snapshot_id: str | None = None
    commitment: str | None = None
    record: PublicRecord | None = None
    history: list[tuple[str, float]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status in (RunStatus.SUCCESS, RunStatus.DEGRADED_SUCCESS)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "state": self.state.value if self.state else None,
            "reason": self.reason,
            "run_id": self.run_id,
            "snapshot_id": self.snapshot_id,
            "commitment": self.commitment,
            "record": self.record.to_payload() if self.record else None,
            "published": self.record.published if self.record else False,
            "history": [state for state, _ in self.history],
        }


# =============================================================================
# Coordinator
# =============================================================================

class SnapshotCoordinator:
    """
    Owns all pending-run state and the single request/response channel.

    Args:
        registry: Provider capability registry
        capture_service: Attestation capture service
        verifier: Attestation verifier
        store: Encrypted snapshot store
        metadata_client: Remote metadata client, or None to keep records queued locally
        capture_timeout: Seconds allowed for a capture including retries
        vkey_timeout: Seconds allowed for verification (covers the first key load)
        storage_timeout: Seconds allowed for each durable store call
        kdf_iterations: PBKDF2 iterations for the snapshot key
        clock: Returns the current epoch time in seconds
        max_workers: Worker threads for bounded suspension points
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        capture_service: AttestationCaptureService,
        verifier: AttestationVerifier,
        store: SnapshotStore,
        metadata_client: MetadataClient | None = None,
        capture_timeout: float = 120.0,
        vkey_timeout: float = 30.0,
        storage_timeout: float = 10.0,
        kdf_iterations: int = PBKDF2_ITERATIONS,
        clock: Callable[[], float] = time.time,
        max_workers: int = 4,
    ):
        self.registry = registry
        self.capture_service = capture_service
        self.verifier = verifier
        self.store = store
        self.metadata_client = metadata_client
        self.capture_timeout = capture_timeout
        self.vkey_timeout = vkey_timeout
        self.storage_timeout = storage_timeout
        self.kdf_iterations = kdf_iterations
        self._clock = clock

        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="zktls-run")
        self._in_flight: dict[tuple[str, str], OrchestrationRun] = {}
        self._lock = threading.Lock()

        self._handlers: dict[type, Callable[[Any], Response]] = {
            CheckProvider: self._handle_check_provider,
            CreateSnapshot: self._handle_create_snapshot,
            ListSnapshots: self._handle_list_snapshots,
            RevokeSnapshot: self._handle_revoke_snapshot,
            RetryPublish: self._handle_retry_publish,
            EndSession: self._handle_end_session,
        }

    # Channel ------------------------------------------------------------

    def handle(self, message: Message) -> Response:
        handler = self._handlers.get(type(message))
        if handler is None:
            return Response(success=False, error="unknown_message")
        try:
            return handler(message)
        except SnapshotError as e:
            logger.error(f"{type(message).__name__} failed: {e}", extra={"error": e.to_dict()})
            return Response(success=False, error=e.reason)

    def shutdown(self) -> None:
        with self._lock:
            runs = list(self._in_flight.values())
        for run in runs:
            run.cancel()
        self._executor.shutdown(wait=True, cancel_futures=True)

    # In-flight tracking --------------------------------------------------

    @staticmethod
    def _run_key(owner: str, provider_id: str) -> tuple[str, str]:
        return (owner.lower(), provider_id)

    def _reserve(self, owner: str, provider_id: str) -> OrchestrationRun | None:
        key = self._run_key(owner, provider_id)
        with self._lock:
            if key in self._in_flight:
                return None
            run = OrchestrationRun(owner=owner, provider_id=provider_id, clock=self._clock)
            self._in_flight[key] = run
        metrics.increment_gauge("runs_in_flight")
        return run

    def _release(self, run: OrchestrationRun) -> None:
        key = self._run_key(run.owner, run.provider_id)
        with self._lock:
            if self._in_flight.get(key) is run:
                del self._in_flight[key]
        metrics.decrement_gauge("runs_in_flight")

    def in_flight(self) -> list[tuple[str, str]]:
        with self._lock:
            return list(self._in_flight)

    # Bounded suspension points -------------------------------------------

    def _bounded(self, run: OrchestrationRun, timeout: float, func: Callable, *args,
                 on_abandon: Callable[[Future], None] | None = None) -> Any:
        """
        Run ``func`` on a worker with a deadline, watching for cancellation.

        ``on_abandon`` is attached to the future when the run stops waiting
        for it, so work that completes later can be undone.
        """
        future = self._executor.submit(func, *args)
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._abandon(future, on_abandon)
                raise RunAborted("timeout", f"{getattr(func, '__name__', 'call')} exceeded {timeout}s")
            try:
                return future.result(timeout=min(remaining, CANCEL_POLL_INTERVAL))
            except TimeoutError:
                if future.done():
                    # The callable itself raised TimeoutError
                    raise
                if run.cancelled:
                    self._abandon(future, on_abandon)
                    raise RunAborted("cancelled", "Session ended during the run") from None

    @staticmethod
    def _abandon(future: Future, on_abandon: Callable[[Future], None] | None) -> None:
        if future.cancel():
            return
        if on_abandon is not None:
            future.add_done_callback(on_abandon)

    # Create --------------------------------------------------------------

    def _resolve_capability(self, message: CreateSnapshot) -> ProviderCapability | None:
        if message.provider_id:
            return self.registry.get(message.provider_id)
        return self.registry.find_by_host(message.page.host)

    def create_snapshot(self, message: CreateSnapshot) -> RunOutcome:
        """Run the full pipeline for one snapshot. Never raises."""
        capability = self._resolve_capability(message)
        if capability is None:
            metrics.increment("orchestration_runs_total", labels={"outcome": "aborted"})
            return RunOutcome(status=RunStatus.ABORTED, reason="provider_not_found")

        run = self._reserve(message.owner, capability.provider_id)
        if run is None:
            logger.info(f"Run for {capability.provider_id} already in flight; rejecting as busy")
            metrics.increment("orchestration_runs_total", labels={"outcome": "busy"})
            return RunOutcome(status=RunStatus.BUSY, reason="busy")

        with LoggingContext(run_id=run.run_id, provider=capability.provider_id):
            try:
                outcome = self._execute(run, capability, message)
            except RunAborted as e:
                outcome = self._abort(run, e.reason, str(e))
            except SnapshotError as e:
                outcome = self._abort(run, e.reason, str(e))
            except Exception as e:
                reason = "cancelled" if run.cancelled else "internal_error"
                logger.exception(f"Run {run.run_id} failed unexpectedly: {e}")
                outcome = self._abort(run, reason, str(e))
            finally:
                run.key_slot.clear()
                self._release(run)

        metrics.increment("orchestration_runs_total", labels={"outcome": outcome.status.value})
        return outcome

    def _abort(self, run: OrchestrationRun, reason: str, message: str) -> RunOutcome:
        logger.warning(f"Run {run.run_id} aborted in {run.state.value}: {reason} ({message})")
        if run.state not in TERMINAL_STATES:
            run.transition(RunState.ABORTED)
        return RunOutcome(
            status=RunStatus.ABORTED,
            state=run.state,
            reason=reason,
            run_id=run.run_id,
            history=list(run.history),
        )

    def _execute(self, run: OrchestrationRun, capability: ProviderCapability,
                 message: CreateSnapshot) -> RunOutcome:
        run.transition(RunState.PROVIDER_DETECTED)

        if not capability.login_check(message.page):
            raise RunAborted("not_logged_in", f"Not logged in to {capability.provider_id}")
        run.transition(RunState.LOGIN_VERIFIED)

        run.checkpoint()
        run.transition(RunState.CAPTURING)
        result: CaptureResult = self._bounded(
            run,
            self.capture_timeout,
            self.capture_service.capture,
            capability.provider_id,
            capability.endpoint,
            capability.http_method,
            capability.auth_header_builder(message.page),
        )

        verification = self._bounded(
            run,
            self.vkey_timeout,
            self.verifier.verify,
            result.attestation,
            result.domain,
            message.predicate,
            result.attested,
        )
        raise_for_result(verification)
        run.transition(RunState.CAPTURED if result.attested else RunState.CAPTURED_UNATTESTED)

        attrs = self._normalize(capability, result)

        run.checkpoint()
        run.transition(RunState.COMMITTING)
        randomness = generate_randomness()
        commitment = commit(attrs, randomness, DEFAULT_SCHEME)

        run.checkpoint()
        run.transition(RunState.ENCRYPTING)
        run.key_slot.set(derive_key(message.owner, message.signature, iterations=self.kdf_iterations))

        now = int(self._clock())
        snapshot_id = new_snapshot_id()
        expires_at = now + int(capability.default_validity.total_seconds())
        # The secret holds the exact attribute mapping the commitment was computed over
        secret = SnapshotSecret(
            snapshot_id=snapshot_id,
            owner=message.owner,
            provider_id=capability.provider_id,
            attrs=attrs,
            randomness=randomness,
            created_at=now,
            expires_at=expires_at,
        )
        record = PublicRecord(
            snapshot_id=snapshot_id,
            owner=message.owner,
            provider_id=capability.provider_id,
            snapshot_type=capability.snapshot_type,
            commitment=commitment,
            scheme=DEFAULT_SCHEME.value,
            version=SNAPSHOT_VERSION,
            snapshot_at=now,
            expires_at=expires_at,
            verification_method=(
                VerificationMethod.NOTARIZED_TLS if result.attested else VerificationMethod.UNATTESTED
            ),
            attestation_proof_hash=(
                attestation_proof_hash(result.attestation, capability.provider_id, SNAPSHOT_VERSION)
                if result.attested else None
            ),
            summary=capability.summary_builder(attrs) if capability.summary_builder else None,
        )

        run.checkpoint()
        self._bounded(
            run,
            self.storage_timeout,
            self.store.persist,
            secret,
            run.key_slot.get(),
            record,
            on_abandon=self._rollback_callback(snapshot_id),
        )
        run.transition(RunState.PERSISTED)
        run.key_slot.clear()
        logger.info(f"Snapshot {snapshot_id} persisted ({record.verification_method.value})")

        if self._publish(record, message.signature, run):
            run.transition(RunState.PUBLISHED)

        return RunOutcome(
            status=RunStatus.SUCCESS if result.attested else RunStatus.DEGRADED_SUCCESS,
            state=run.state,
            reason=None if result.attested else result.fallback_reason or "unattested",
            run_id=run.run_id,
            snapshot_id=snapshot_id,
            commitment=commitment,
            record=record,
            history=list(run.history),
        )

    @staticmethod
    def _normalize(capability: ProviderCapability, result: CaptureResult) -> dict[str, Any]:
        body = result.attestation.response.body
        try:
            raw = json.loads(body) if body else {}
        except ValueError:
            logger.debug(f"{capability.provider_id} response is not JSON; normalizing empty payload")
            raw = {}
        if not isinstance(raw, dict):
            raw = {"data": raw}
        try:
            return dict(capability.attribute_normalizer(raw))
        except (KeyError, TypeError, ValueError, AttributeError, OverflowError) as e:
            raise RunAborted("normalization_failed", f"{capability.provider_id}: {e}") from e

    def _rollback_callback(self, snapshot_id: str) -> Callable[[Future], None]:
        def rollback(future: Future) -> None:
            if future.cancelled() or future.exception() is not None:
                return
            logger.warning(f"Rolling back snapshot {snapshot_id} written after its run stopped")
            try:
                self.store.delete_record(snapshot_id)
                self.store.delete_snapshot(snapshot_id)
            except SnapshotError as e:
                logger.error(f"Rollback of {snapshot_id} failed: {e}")
        return rollback

    # Publish ---------------------------------------------------------------

    def _publish(self, record: PublicRecord, signature: str | None,
                 run: OrchestrationRun | None = None) -> bool:
        """
        Publish and mark the local record. Failures leave it queued.

        Inside a run the local write is bounded by ``storage_timeout``; if it
        does not finish in time the run stays PERSISTED and the record stays
        queued.
        """
        if self.metadata_client is None:
            logger.info(f"No metadata service configured; {record.snapshot_id} stays queued")
            return False
        try:
            result = self.metadata_client.publish(record, signature)
        except PublishFailure as e:
            metrics.increment("publish_failures_total")
            logger.warning(f"Publish of {record.snapshot_id} failed, queued for retry: {e}")
            return False

        marked = replace(record, published=True, remote_id=result["id"])
        try:
            if run is None:
                self.store.save_record(marked)
            else:
                self._bounded(run, self.storage_timeout, self.store.save_record, marked)
        except RunAborted as e:
            logger.warning(f"Published {record.snapshot_id} but the local mark stopped: {e.reason}")
            return False
        except SnapshotError as e:
            logger.error(f"Published {record.snapshot_id} but could not mark it locally: {e}")
        record.published = True
        record.remote_id = marked.remote_id
        return True

    # Handlers ----------------------------------------------------------------

    def _handle_check_provider(self, message: CheckProvider) -> Response:
        capability = self.registry.find_by_host(message.page.host)
        if capability is None:
            return Response(success=True, data={"provider_id": None, "available": False})
        return Response(success=True, data={
            "provider_id": capability.provider_id,
            "available": True,
            "snapshot_type": capability.snapshot_type.value,
            "logged_in": bool(capability.login_check(message.page)),
        })

    def _handle_create_snapshot(self, message: CreateSnapshot) -> Response:
        outcome = self.create_snapshot(message)
        return Response(
            success=outcome.succeeded,
            data=outcome.to_dict(),
            error=None if outcome.succeeded else outcome.reason,
        )

    def _handle_list_snapshots(self, message: ListSnapshots) -> Response:
        self.store.purge_expired()
        key = derive_key(message.owner, message.signature, iterations=self.kdf_iterations)
        snapshots = []
        for record in self.store.list_records(owner=message.owner):
            entry: dict[str, Any] = {"snapshot_id": record.snapshot_id, "record": record.to_dict()}
            if record.status == SnapshotStatus.ACTIVE:
                try:
                    secret = self.store.retrieve_snapshot(record.snapshot_id, key)
                except DecryptionError:
                    secret = None
                entry["decryptable"] = secret is not None
                if secret is not None:
                    entry["attributes"] = dict(secret.attrs)
            else:
                entry["decryptable"] = False
            snapshots.append(entry)
        return Response(success=True, data={"snapshots": snapshots})

    def _handle_revoke_snapshot(self, message: RevokeSnapshot) -> Response:
        record = self.store.get_record(message.snapshot_id)
        if record is None or record.owner.lower() != message.owner.lower():
            return Response(success=False, error="not_found")
        if record.status != SnapshotStatus.ACTIVE:
            return Response(success=False, error=f"already_{record.status.value}")

        # Only the holder of the owner's key may revoke
        key = derive_key(message.owner, message.signature, iterations=self.kdf_iterations)
        try:
            secret = self.store.retrieve_snapshot(message.snapshot_id, key)
        except DecryptionError:
            return Response(success=False, error="unauthorized")
        if secret is None:
            return Response(success=False, error="not_found")

        remote_revoked = False
        if record.published and self.metadata_client is not None:
            try:
                self.metadata_client.revoke(
                    record.remote_id or record.snapshot_id, message.owner,
                    message.reason, message.signature,
                )
                remote_revoked = True
            except PublishFailure as e:
                logger.warning(f"Remote revoke of {record.snapshot_id} failed: {e}")

        self.store.tombstone(message.snapshot_id, SnapshotStatus.REVOKED, message.reason)
        return Response(success=True, data={
            "snapshot_id": message.snapshot_id,
            "remote_revoked": remote_revoked,
        })

    def _handle_retry_publish(self, message: RetryPublish) -> Response:
        now = int(self._clock())
        published, failed = [], []
        for record in self.store.pending_publish():
            if message.owner and record.owner.lower() != message.owner.lower():
                continue
            if record.expires_at <= now:
                continue
            if self._publish(record, message.signature):
                published.append(record.snapshot_id)
            else:
                failed.append(record.snapshot_id)
        return Response(success=not failed, data={"published": published, "failed": failed},
                        error="publish_failed" if failed else None)

    def _handle_end_session(self, message: EndSession) -> Response:
        owner = message.owner.lower()
        with self._lock:
            runs = [run for (run_owner, _), run in self._in_flight.items() if run_owner == owner]
        for run in runs:
            run.cancel()
        if runs:
            logger.info(f"Cancelled {len(runs)} in-flight run(s) at session end")
        return Response(success=True, data={"cancelled": [run.run_id for run in runs]})
