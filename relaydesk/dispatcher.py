"""
Ordered bulk delivery.

BulkDispatcher walks pending messages conversation by conversation,
oldest first, one message at a time:

    pending list -> group by (sender, receiver) -> sort each group by
    unix_timestamp -> flatten -> for each message: ordering guard ->
    relay send -> store update -> optional verification -> progress

An ORDER_VIOLATION fails the rest of that conversation without sending
it. Any other failure only fails the message itself. Nothing is retried
automatically; the operator re-triggers a send, which re-enters the same
step function.

DispatchSession wraps a dispatcher for the HTTP layer: one run (or single
send) at a time, an observable progress value and a cancel signal.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from relaydesk.clock import ClockUnavailable, ConversationClock
from relaydesk.grouping import conversation_key, flatten, group_conversations
from relaydesk.logging_utils import dispatch_id_ctx
from relaydesk.metrics import record_delivery_outcome, record_dispatch_run
from relaydesk.relay import DeliveryClient, VerificationReconciler
from relaydesk.schemas import (
    DispatchProgress,
    DispatchReport,
    ErrorKind,
    MessageRecord,
    MessageStatus,
    SendOutcome,
    VerificationStatus,
)
from relaydesk.storage import MessageAlreadySent, MessageLocked, MessageNotFound, MessageStore
from relaydesk.utils import new_request_id

logger = logging.getLogger(__name__)

SKIPPED_DETAIL = "skipped due to prior ordering failure"


class ProgressObserver(Protocol):
    def on_progress(self, progress: DispatchProgress) -> None:
        ...


def not_sent(message: MessageRecord) -> bool:
    """Default candidate filter for a bulk run."""
    return message.status != MessageStatus.SENT


@dataclass
class _ConversationGuard:
    """Last known timestamp of one conversation during a run."""
    last_timestamp: Optional[int] = None
    synced: bool = False

    def observe(self, timestamp: Optional[int]) -> None:
        if timestamp is None:
            return
        if self.last_timestamp is None or timestamp > self.last_timestamp:
            self.last_timestamp = timestamp

    def allows(self, timestamp: int) -> bool:
        return self.last_timestamp is None or timestamp > self.last_timestamp


class BulkDispatcher:
    """
    Sequential, order-preserving sender over the Message Store.

    Args:
        store: Message Store
        delivery: relay send client
        clock: conversation clock, queried before the first send of each
            conversation when ordering_precheck is on
        reconciler: update-feed verifier, used when verify_after_send is on
        ordering_precheck: query the clock before sending
        verify_after_send: confirm each accepted message against the feed
        send_delay: seconds to wait between two messages
    """

    def __init__(
        self,
        store: MessageStore,
        delivery: DeliveryClient,
        clock: ConversationClock,
        reconciler: Optional[VerificationReconciler] = None,
        ordering_precheck: bool = True,
        verify_after_send: bool = False,
        send_delay: float = 0.5,
    ):
        if verify_after_send and reconciler is None:
            raise ValueError("verify_after_send requires a reconciler")
        self._store = store
        self._delivery = delivery
        self._clock = clock
        self._reconciler = reconciler
        self._ordering_precheck = ordering_precheck
        self._verify_after_send = verify_after_send
        self._send_delay = send_delay

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def dispatch(
        self,
        predicate: Callable[[MessageRecord], bool] = not_sent,
        observer: Optional[ProgressObserver] = None,
        cancel_event: Optional[asyncio.Event] = None,
        dispatch_id: Optional[str] = None,
    ) -> DispatchReport:
        """
        Send every candidate message, conversation by conversation.

        Cancellation is checked between messages only; an in-flight send
        always completes. Messages not reached keep their prior state.
        """
        dispatch_id = dispatch_id or new_request_id("dispatch")
        token = dispatch_id_ctx.set(dispatch_id)
        try:
            # Sent messages are never candidates, whatever the predicate says
            candidates = [
                m for m in self._store.list_messages()
                if m.status != MessageStatus.SENT and predicate(m)
            ]
            groups = group_conversations(candidates)
            sequence = flatten(groups)
            total = len(sequence)
            logger.info(
                f"Dispatch started: {total} message(s) in {len(groups)} conversation(s)",
                extra={"total": total, "conversations": len(groups)},
            )

            progress = DispatchProgress(dispatch_id=dispatch_id, total=total, running=True)
            report = DispatchReport(dispatch_id=dispatch_id, total=total, processed=0)
            self._notify(observer, progress)

            guards: dict[tuple[str, str], _ConversationGuard] = {}
            index = 0
            while index < total:
                if cancel_event is not None and cancel_event.is_set():
                    logger.info(f"Dispatch cancelled after {index} of {total} message(s)")
                    progress.cancelled = True
                    report.cancelled = True
                    break

                message = sequence[index]
                key = conversation_key(message)
                guard = guards.setdefault(key, _ConversationGuard())

                progress.current = index + 1
                outcome = await self._step(
                    message, guard, on_sending=lambda: self._notify(observer, progress)
                )
                index += 1
                self._tally(report, outcome)

                if outcome is not None and outcome.error_kind == ErrorKind.ORDER_VIOLATION:
                    # Group members are contiguous in the flattened sequence
                    while index < total and conversation_key(sequence[index]) == key:
                        if self._skip(sequence[index]):
                            report.skipped += 1
                        index += 1
                    progress.current = index
                    self._notify(observer, progress)

                if index < total:
                    await self._pause(cancel_event)

            report.processed = index
            progress.current = index
            progress.running = False
            self._notify(observer, progress)
            record_dispatch_run("cancelled" if report.cancelled else "completed")
            logger.info(
                "Dispatch finished",
                extra={
                    "processed": report.processed,
                    "sent": report.sent,
                    "failed": report.failed,
                    "skipped": report.skipped,
                    "cancelled": report.cancelled,
                },
            )
            return report
        finally:
            dispatch_id_ctx.reset(token)

    async def send_one(
        self,
        message_id: str,
        observer: Optional[ProgressObserver] = None,
    ) -> MessageRecord:
        """
        Send a single message through the same step as a bulk run.

        A message that is already sent is returned untouched and the relay
        is not called.

        Raises:
            MessageNotFound, MessageLocked (already sending)
        """
        message = self._store.get(message_id)
        if message is None:
            raise MessageNotFound(message_id)
        if message.status == MessageStatus.SENT:
            logger.info(f"Message {message_id} already sent; nothing to do")
            return message
        if message.status == MessageStatus.SENDING:
            raise MessageLocked(message_id)

        dispatch_id = new_request_id("single")
        token = dispatch_id_ctx.set(dispatch_id)
        try:
            progress = DispatchProgress(dispatch_id=dispatch_id, current=1, total=1, running=True)
            await self._step(
                message, _ConversationGuard(), on_sending=lambda: self._notify(observer, progress)
            )
            progress.running = False
            self._notify(observer, progress)
        finally:
            dispatch_id_ctx.reset(token)

        return self._store.get(message_id) or message

    async def verify(self, message_id: str) -> tuple[bool, MessageRecord]:
        """
        Manually re-check a sent message against the relay's update feed.

        Raises:
            MessageNotFound
            ValueError: message is not sent or has no receipt id
        """
        if self._reconciler is None:
            raise ValueError("verification is not configured")
        message = self._store.get(message_id)
        if message is None:
            raise MessageNotFound(message_id)
        if message.status != MessageStatus.SENT or message.delivery_receipt_id is None:
            raise ValueError("only sent messages with a receipt id can be verified")

        verified = await self._reconciler.verify(message.delivery_receipt_id)
        status = VerificationStatus.VERIFIED if verified else VerificationStatus.UNVERIFIED
        return verified, self._store.set_verification(message_id, status)

    # -------------------------------------------------------------------------
    # Shared step
    # -------------------------------------------------------------------------

    async def _step(
        self,
        message: MessageRecord,
        guard: _ConversationGuard,
        on_sending: Optional[Callable[[], None]] = None,
    ) -> Optional[SendOutcome]:
        """
        Run one message through sending -> sent/failed.

        `message` is the snapshot the caller planned with, and `guard`
        belongs to its conversation. on_sending is called once the message
        is marked sending. Returns None when the message vanished, was sent
        meanwhile, or was edited out of the planned conversation or time.
        """
        current = self._begin(message)
        if current is None:
            return None
        if on_sending is not None:
            on_sending()

        try:
            outcome = await self._attempt(current, guard)
        except Exception as e:
            logger.exception(f"Unexpected failure while sending message {current.id}")
            outcome = SendOutcome.failed(ErrorKind.EXCEPTION, f"unexpected error: {e}")

        try:
            await self._record(current, outcome, guard)
        except Exception as e:
            logger.exception(f"Failed to record outcome for message {current.id}")
            outcome = self._settle(current, e)

        record_delivery_outcome("sent" if outcome.success else outcome.error_kind.value.lower())
        return outcome

    def _begin(self, message: MessageRecord) -> Optional[MessageRecord]:
        try:
            current = self._store.mark_sending(message.id)
        except (MessageNotFound, MessageAlreadySent) as e:
            logger.warning(f"Message {message.id} skipped: {type(e).__name__}")
            return None

        if (
            conversation_key(current) != conversation_key(message)
            or current.unix_timestamp != message.unix_timestamp
        ):
            # Edited since the run was planned; the guard in hand is not its own
            logger.warning(f"Message {message.id} changed conversation or time during the run; left pending")
            self._store.mark_pending(current.id)
            return None
        return current

    async def _attempt(self, message: MessageRecord, guard: _ConversationGuard) -> SendOutcome:
        if not guard.synced:
            guard.observe(self._store.last_sent_timestamp(message.sender, message.receiver))
            if self._ordering_precheck:
                try:
                    guard.observe(await self._clock.last_timestamp(message.sender, message.receiver))
                except ClockUnavailable as e:
                    return SendOutcome.failed(
                        ErrorKind.TRANSPORT_ERROR, f"conversation clock unavailable: {e}"
                    )
            guard.synced = True

        if not guard.allows(message.unix_timestamp):
            detail = (
                f"timestamp {message.unix_timestamp} is not after the conversation's "
                f"last message at {guard.last_timestamp}"
            )
            logger.warning(f"Ordering guard rejected message {message.id}: {detail}")
            return SendOutcome.failed(ErrorKind.ORDER_VIOLATION, detail)

        return await self._delivery.send(message)

    async def _record(self, message: MessageRecord, outcome: SendOutcome, guard: _ConversationGuard) -> None:
        if not outcome.success:
            self._store.mark_failed(message.id, outcome.error_kind, outcome.error_detail or "")
            logger.info(
                f"Message {message.id} failed",
                extra={"error_kind": outcome.error_kind.value, "error_detail": outcome.error_detail},
            )
            return

        guard.observe(message.unix_timestamp)
        receipt_id = outcome.delivery_receipt_id

        if not self._verify_after_send:
            self._store.mark_sent(message.id, receipt_id)
            logger.info(f"Message {message.id} sent", extra={"delivery_receipt_id": receipt_id})
            return

        if receipt_id is None:
            self._store.mark_sent(message.id, None, VerificationStatus.UNVERIFIED)
            logger.warning(f"Message {message.id} sent without receipt id; cannot verify")
            return

        self._store.mark_sent(message.id, receipt_id, VerificationStatus.PENDING)
        try:
            verified = await self._reconciler.verify(receipt_id)
        except Exception:
            logger.exception(f"Verification of message {message.id} failed; marking unverified")
            verified = False
        self._store.set_verification(
            message.id,
            VerificationStatus.VERIFIED if verified else VerificationStatus.UNVERIFIED,
        )
        logger.info(
            f"Message {message.id} sent",
            extra={"delivery_receipt_id": receipt_id, "verified": verified},
        )

    def _skip(self, message: MessageRecord) -> bool:
        current = self._store.get(message.id)
        if current is None or conversation_key(current) != conversation_key(message):
            logger.warning(f"Message {message.id} not skipped: no longer in this conversation")
            return False
        try:
            self._store.mark_failed(message.id, ErrorKind.SKIPPED, SKIPPED_DETAIL)
        except (MessageNotFound, MessageAlreadySent) as e:
            logger.warning(f"Message {message.id} not skipped: {type(e).__name__}")
            return False
        record_delivery_outcome("skipped")
        return True

    def _settle(self, message: MessageRecord, error: Exception) -> SendOutcome:
        """
        Outcome for a message whose result could not be recorded.

        A message the store already holds as sent stays a success;
        anything else is moved out of sending to failed.
        """
        outcome = SendOutcome.failed(ErrorKind.EXCEPTION, f"could not record outcome: {error}")
        try:
            stored = self._store.get(message.id)
            if stored is not None and stored.status == MessageStatus.SENT:
                return SendOutcome(success=True, delivery_receipt_id=stored.delivery_receipt_id)
            self._store.mark_failed(message.id, outcome.error_kind, outcome.error_detail)
        except Exception:
            logger.exception(f"Message {message.id} could not be moved out of sending")
        return outcome

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _pause(self, cancel_event: Optional[asyncio.Event]) -> None:
        """Inter-message delay; returns early when cancellation is requested."""
        if self._send_delay <= 0:
            return
        if cancel_event is None:
            await asyncio.sleep(self._send_delay)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=self._send_delay)
        except asyncio.TimeoutError:
            pass

    @staticmethod
    def _tally(report: DispatchReport, outcome: Optional[SendOutcome]) -> None:
        if outcome is None:
            return
        if outcome.success:
            report.sent += 1
        else:
            report.failed += 1

    @staticmethod
    def _notify(observer: Optional[ProgressObserver], progress: DispatchProgress) -> None:
        if observer is None:
            return
        try:
            observer.on_progress(progress.model_copy())
        except Exception:
            logger.exception("Progress observer failed")


# =============================================================================
# Dispatch Session
# =============================================================================

class DispatchInProgress(Exception):
    """A bulk run or single send is already in flight."""


class NoDispatchRunning(Exception):
    """Cancellation was requested but nothing is running."""


class DispatchSession:
    """
    Single-flight wrapper used by the HTTP layer.

    Holds the latest progress value for polling and the cancel signal of
    the current run. Only one bulk run or single send may be in flight.
    """

    def __init__(self, dispatcher: BulkDispatcher):
        self.dispatcher = dispatcher
        self.progress = DispatchProgress()
        self.last_report: Optional[DispatchReport] = None
        self._busy = False
        self._cancel_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._busy

    def on_progress(self, progress: DispatchProgress) -> None:
        self.progress = progress

    async def run(self) -> DispatchReport:
        """Run a bulk dispatch and wait for it to finish."""
        self._claim()
        return await self._run(new_request_id("dispatch"))

    def start(self) -> DispatchProgress:
        """Start a bulk dispatch in the background and return its initial progress."""
        self._claim()
        dispatch_id = new_request_id("dispatch")
        self.progress = DispatchProgress(dispatch_id=dispatch_id, running=True)
        self._task = asyncio.create_task(self._run(dispatch_id))
        self._task.add_done_callback(self._log_task_failure)
        return self.progress

    async def send_one(self, message_id: str) -> MessageRecord:
        self._claim()
        try:
            return await self.dispatcher.send_one(message_id, observer=self)
        finally:
            self._busy = False

    def cancel(self) -> DispatchProgress:
        if not self._busy:
            raise NoDispatchRunning()
        logger.info("Dispatch cancellation requested")
        self._cancel_event.set()
        return self.progress

    def _claim(self) -> None:
        if self._busy:
            raise DispatchInProgress()
        self._busy = True
        self._cancel_event = asyncio.Event()

    async def _run(self, dispatch_id: str) -> DispatchReport:
        try:
            report = await self.dispatcher.dispatch(
                observer=self,
                cancel_event=self._cancel_event,
                dispatch_id=dispatch_id,
            )
            self.last_report = report
            return report
        finally:
            self._busy = False
            self.progress = self.progress.model_copy(update={"running": False})

    @staticmethod
    def _log_task_failure(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background dispatch failed", exc_info=exc)
