"""
Entry orchestration for deal participants.

Decides, for one viewer at one instant, whether they may edit deal data:

- Parallel mode (every sequence_order is null): any external participant
  who has not completed may edit.
- Sequential mode (any sequence_order set): only the *active* participant,
  the lowest sequence_order that has not completed, may edit. Everyone
  else waits on the nearest open predecessor.
- Internal staff (admin, csr) are never gated; completed external
  participants are read-only in either mode.

State is never cached across roster changes: every refresh reloads the
roster and recomputes from scratch. RosterWatcher drives those refreshes
from the data source's push channel as a background task.
"""

from __future__ import annotations

import asyncio
import inspect
import weakref
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

import structlog

from .errors import AlreadyCompletedError, NotFoundError
from .logging import logging_context
from .models.activity import ActivityType
from .models.participant import (
    AccessMethod,
    CompletionResult,
    DealParticipant,
    EntryMode,
    OrchestrationState,
    ParticipantStatus,
    RosterSubscription,
    ViewerIdentity,
)
from .repository import DealDataSource, record_activity

logger = structlog.get_logger(__name__)


# =============================================================================
# Pure Gating Rules
# =============================================================================


def determine_mode(participants: list[DealParticipant]) -> EntryMode:
    """Sequential if any participant has a sequence_order, else parallel."""
    if any(p.sequence_order is not None for p in participants):
        return EntryMode.SEQUENTIAL
    return EntryMode.PARALLEL


def _open_sequential(participants: list[DealParticipant]) -> list[DealParticipant]:
    return [p for p in participants if p.sequence_order is not None and not p.is_completed]


def find_active_participant(participants: list[DealParticipant]) -> DealParticipant | None:
    """The open participant with the lowest sequence_order, or None when all are done."""
    candidates = _open_sequential(participants)
    if not candidates:
        return None
    return min(candidates, key=lambda p: p.sequence_order)


def find_blocking_participant(
    current: DealParticipant,
    participants: list[DealParticipant],
) -> DealParticipant | None:
    """The nearest open predecessor: highest open sequence_order below the viewer's."""
    if current.sequence_order is None:
        return None
    predecessors = [
        p for p in _open_sequential(participants) if p.sequence_order < current.sequence_order
    ]
    if not predecessors:
        return None
    return max(predecessors, key=lambda p: p.sequence_order)


def find_next_participant(
    completer: DealParticipant,
    participants: list[DealParticipant],
) -> DealParticipant | None:
    """The lowest open sequence_order after the completer's, used for notification."""
    if completer.sequence_order is None:
        return None
    successors = [
        p
        for p in _open_sequential(participants)
        if p.id != completer.id and p.sequence_order > completer.sequence_order
    ]
    if not successors:
        return None
    return min(successors, key=lambda p: p.sequence_order)


def find_viewer_participant(
    viewer: ViewerIdentity,
    participants: list[DealParticipant],
) -> DealParticipant | None:
    """Match the viewer by user_id, then (external viewers) by magic-link participant_id."""
    if viewer.user_id:
        for participant in participants:
            if participant.user_id == viewer.user_id:
                return participant
    if viewer.is_external and viewer.participant_id:
        for participant in participants:
            if participant.id == viewer.participant_id:
                return participant
    return None


def compute_orchestration_state(
    participants: list[DealParticipant],
    viewer: ViewerIdentity,
) -> OrchestrationState:
    """Evaluate the permission contract for one viewer against a roster snapshot."""
    mode = determine_mode(participants)
    active = find_active_participant(participants) if mode == EntryMode.SEQUENTIAL else None
    current = find_viewer_participant(viewer, participants)

    can_edit = True
    is_waiting = False
    blocking: DealParticipant | None = None

    if not viewer.is_internal:
        if current is None:
            # No roster entry on this deal means no write rights
            can_edit = False
        elif current.is_completed:
            can_edit = False
        elif mode == EntryMode.SEQUENTIAL and active is not None and active.id != current.id:
            can_edit = False
            is_waiting = True
            blocking = find_blocking_participant(current, participants)

    return OrchestrationState(
        mode=mode,
        can_edit=can_edit,
        is_waiting=is_waiting,
        blocking_participant=blocking,
        has_completed=current is not None and current.is_completed,
        current_participant=current,
        active_participant=active,
        participants=list(participants),
    )


# =============================================================================
# EntryOrchestrator
# =============================================================================


class EntryOrchestrator:
    """
    Loads rosters and applies participant transitions.

    Completion is at-most-once: an in-process lock per participant serializes
    concurrent attempts, and the data source's compare-and-set rejects a
    second completion coming from another process.
    """

    def __init__(self, source: DealDataSource):
        self.source = source
        # Entries disappear once no coroutine holds the lock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    async def get_orchestration_state(
        self,
        deal_id: str,
        viewer: ViewerIdentity,
    ) -> OrchestrationState:
        """Reload the roster and compute the viewer's gating state."""
        participants = await self.source.load_participants(deal_id)
        state = compute_orchestration_state(participants, viewer)
        logger.debug(
            'orchestrator.state',
            deal_id=deal_id,
            mode=state.mode.value,
            can_edit=state.can_edit,
            is_waiting=state.is_waiting,
        )
        return state

    async def _find_participant(self, participant_id: str, deal_id: str) -> tuple[DealParticipant, list[DealParticipant]]:
        participants = await self.source.load_participants(deal_id)
        for participant in participants:
            if participant.id == participant_id:
                return participant, participants
        raise NotFoundError(
            'Participant not found',
            context={'participant_id': participant_id, 'deal_id': deal_id},
        )

    async def start_participant(self, participant_id: str, deal_id: str) -> DealParticipant:
        """First access moves a participant from invited to in_progress; otherwise no-op."""
        participant, _ = await self._find_participant(participant_id, deal_id)
        if participant.status != ParticipantStatus.INVITED:
            return participant

        await self.source.update_participant_status(participant_id, ParticipantStatus.IN_PROGRESS)
        if participant.access_method == AccessMethod.MAGIC_LINK:
            await record_activity(
                self.source,
                deal_id,
                ActivityType.MAGIC_LINK_ACCESSED,
                {'role': participant.role.value, 'participant_id': participant_id},
                actor_user_id=participant.user_id,
            )
        logger.info('orchestrator.participant_started', deal_id=deal_id, participant_id=participant_id)
        return participant.model_copy(update={'status': ParticipantStatus.IN_PROGRESS})

    async def complete_section(
        self,
        participant_id: str,
        deal_id: str,
        actor_user_id: str | None = None,
    ) -> CompletionResult:
        """
        Mark a participant's section completed.

        Raises:
            NotFoundError: participant is not on this deal
            AlreadyCompletedError: participant was already completed

        Returns:
            CompletionResult; in sequential mode next_participant is the
            participant who becomes active (for notification only).
        """
        lock = self._locks.setdefault(participant_id, asyncio.Lock())
        with logging_context(deal_id=deal_id, participant_id=participant_id):
            async with lock:
                participant, participants = await self._find_participant(participant_id, deal_id)
                if participant.is_completed:
                    raise AlreadyCompletedError(
                        'Section already completed',
                        context={'participant_id': participant_id, 'deal_id': deal_id},
                    )

                completed_at = datetime.now(timezone.utc)
                if not await self.source.mark_participant_completed(participant_id, completed_at):
                    raise AlreadyCompletedError(
                        'Section already completed',
                        context={'participant_id': participant_id, 'deal_id': deal_id},
                    )

                completed = participant.model_copy(
                    update={'status': ParticipantStatus.COMPLETED, 'completed_at': completed_at}
                )
                roster = [completed if p.id == participant_id else p for p in participants]
                next_participant = find_next_participant(completed, roster)

                await record_activity(
                    self.source,
                    deal_id,
                    ActivityType.PARTICIPANT_COMPLETED,
                    {'role': participant.role.value, 'participant_id': participant_id},
                    actor_user_id=actor_user_id or participant.user_id,
                )

                logger.info(
                    'orchestrator.section_completed',
                    role=participant.role.value,
                    next_participant_id=next_participant.id if next_participant else None,
                )
                return CompletionResult(
                    success=True,
                    participant=completed,
                    next_participant=next_participant,
                )


# =============================================================================
# Roster Watcher
# =============================================================================


StateCallback = Callable[[OrchestrationState], Awaitable[None] | None]


class RosterWatcher:
    """
    Recomputes a viewer's orchestration state whenever the roster changes.

    Runs as a cooperative background task: each RosterChanged event triggers a
    full reload (never an incremental patch) and the new state is handed to
    on_state. A failing refresh is logged and the watcher keeps listening.
    """

    def __init__(
        self,
        orchestrator: EntryOrchestrator,
        deal_id: str,
        viewer: ViewerIdentity,
        on_state: StateCallback,
    ):
        self.orchestrator = orchestrator
        self.deal_id = deal_id
        self.viewer = viewer
        self.on_state = on_state
        self.state: OrchestrationState | None = None
        self.refresh_count = 0
        self._events: RosterSubscription | None = None
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> OrchestrationState:
        """Subscribe, deliver the initial state, then watch in the background."""
        if self.running:
            raise RuntimeError('RosterWatcher already started')
        # Listening before the first load so no change falls between them
        self._events = await self.orchestrator.source.subscribe_participant_changes(self.deal_id)
        try:
            state = await self.refresh()
        except Exception:
            await self._close_events()
            raise
        self._task = asyncio.create_task(self._run(), name=f'roster-watcher-{self.deal_id}')
        return state

    async def refresh(self) -> OrchestrationState:
        state = await self.orchestrator.get_orchestration_state(self.deal_id, self.viewer)
        self.state = state
        self.refresh_count += 1
        result = self.on_state(state)
        if inspect.isawaitable(result):
            await result
        return state

    async def _run(self) -> None:
        assert self._events is not None
        async for event in self._events:
            try:
                await self.refresh()
                logger.debug(
                    'roster_watcher.refreshed',
                    deal_id=self.deal_id,
                    roster_event=event.event,
                    participant_id=event.participant_id,
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    'roster_watcher.refresh_failed',
                    deal_id=self.deal_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )

    async def stop(self) -> None:
        """Cancel the background task and close the subscription."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._close_events()

    async def _close_events(self) -> None:
        if self._events is not None:
            events, self._events = self._events, None
            await events.aclose()
