"""Local projection of the server-driven game.

Phases move ``idle -> joined_waiting -> question_active -> round_concluded``
and back to ``question_active`` on the next question. Every inbound
``new-question`` is a full snapshot: question and round state are replaced,
never merged, so a missed intermediate event cannot leave stale data behind.

A dropped connection does not reset anything. The last known state stays
visible until the server pushes something newer; after an automatic
reconnect the client re-sends ``join-game`` with its cached identity so a
server that re-pushes state on join can bring it up to date.
"""

import asyncio
import logging
import time
from typing import Any, Callable, List, Optional

from pydantic import ValidationError

from quiz_client.errors import InvalidDisplayName, NotConnected, RemoteError
from quiz_client.identity import IdentityCache
from quiz_client.models import (
    CurrentQuestion,
    GamePhase,
    GameSnapshot,
    Identity,
    JoinedSuccessfully,
    JoinGame,
    NewQuestion,
    ParticipantChange,
    Question,
    RoundState,
    ServerError,
    SubmissionOutcome,
    WinnerAnnounced,
    WinnerInfo,
)
from quiz_client.transport import ConnectionState, TransportSession


log = logging.getLogger(__name__)

DISPLAY_NAME_MIN = 2
DISPLAY_NAME_MAX = 20


def _remover(listeners: list, listener) -> Callable[[], None]:
    def remove():
        if listener in listeners:
            listeners.remove(listener)
    return remove


class GameSynchronizer:
    def __init__(
        self,
        session: TransportSession,
        identity_cache: Optional[IdentityCache] = None,
        *,
        rejoin_on_reconnect: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session = session
        self.identity_cache = identity_cache
        self.rejoin_on_reconnect = rejoin_on_reconnect
        self._clock = clock

        self._phase = GamePhase.IDLE
        self._identity: Optional[Identity] = None
        self._question: Optional[Question] = None
        self._round_state: Optional[RoundState] = None
        self._outcome: Optional[SubmissionOutcome] = None
        self._participant_count = 0
        self._correct_answer = None
        self._question_started_at: Optional[float] = None
        self._in_flight_since: Optional[float] = None
        self._submission_seq = 0
        self._round_seq = 0

        self._subscriptions = []
        self._session_hooks: List[Callable[[], None]] = []
        self._seen_connection = False
        self._tasks: set = set()
        self._listeners: List[Callable[[GameSnapshot], Any]] = []
        self._error_listeners: List[Callable[[Exception], Any]] = []

    # ---- read side ----

    @property
    def phase(self) -> GamePhase:
        return self._phase

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def question(self) -> Optional[Question]:
        return self._question

    @property
    def round_state(self) -> Optional[RoundState]:
        return self._round_state

    @property
    def outcome(self) -> Optional[SubmissionOutcome]:
        return self._outcome

    @property
    def submission_in_flight(self) -> bool:
        return self._in_flight_since is not None

    @property
    def round_token(self) -> int:
        """Changes whenever a new question replaces the current one."""
        return self._round_seq

    def snapshot(self) -> GameSnapshot:
        return GameSnapshot(
            phase=self._phase,
            identity=self._identity,
            question=self._question,
            round_state=self._round_state,
            outcome=self._outcome,
            submission_in_flight=self.submission_in_flight,
            submission_started_at=self._in_flight_since,
            participant_count=self._participant_count,
            correct_answer=self._correct_answer,
            question_started_at=self._question_started_at,
        )

    def add_listener(self, listener: Callable[[GameSnapshot], Any]) -> Callable[[], None]:
        self._listeners.append(listener)
        return _remover(self._listeners, listener)

    def add_error_listener(self, listener: Callable[[Exception], Any]) -> Callable[[], None]:
        self._error_listeners.append(listener)
        return _remover(self._error_listeners, listener)

    def _emit(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                log.exception(f"[snapshot-listener-error] listener={listener!r}")

    def _report(self, exc: Exception) -> None:
        for listener in list(self._error_listeners):
            try:
                listener(exc)
            except Exception:
                log.exception(f"[error-listener-error] listener={listener!r}")

    # ---- wiring ----

    def attach(self) -> None:
        """Subscribe to server events; calling it again replaces the old wiring."""
        self.detach()
        handlers = (
            ('joined-successfully', JoinedSuccessfully, self._on_joined),
            ('new-question', NewQuestion, self._on_new_question),
            ('submission-result', SubmissionOutcome, self._on_submission_result),
            ('winner-announced', WinnerAnnounced, self._on_winner_announced),
            ('user-joined', ParticipantChange, self._on_participant_change),
            ('user-left', ParticipantChange, self._on_participant_change),
            ('error', ServerError, self._on_server_error),
        )
        for event, model, apply in handlers:
            self._subscriptions.append(self.session.subscribe(event, self._parsed(event, model, apply)))
        self._seen_connection = self.session.is_connected
        self._session_hooks = [
            self.session.add_state_listener(self._on_connection_state),
            self.session.add_error_listener(self._report),
        ]

    def detach(self) -> None:
        for sub in self._subscriptions:
            sub.cancel()
        self._subscriptions = []
        for remove in self._session_hooks:
            remove()
        self._session_hooks = []
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    @staticmethod
    def _parsed(event: str, model, apply):
        def handle(payload):
            try:
                message = model.model_validate(payload if payload is not None else {})
            except ValidationError as e:
                log.warning(f"[event-dropped] event={event} errors={e.error_count()} payload={payload!r}")
                return
            apply(message)
        return handle

    def _on_connection_state(self, state: ConnectionState) -> None:
        if state is not ConnectionState.CONNECTED:
            return
        reconnected = self._seen_connection
        self._seen_connection = True
        if not reconnected:
            return
        log.info(f"[reconnected] phase={self._phase.value} keeping last known state")
        if self.rejoin_on_reconnect and self._phase is not GamePhase.IDLE and self._identity is not None:
            task = asyncio.get_running_loop().create_task(self._rejoin(self._identity))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _rejoin(self, identity: Identity) -> None:
        try:
            await self.session.publish('join-game', JoinGame(display_name=identity.display_name, user_id=identity.id).to_dict())
            log.info(f"[rejoin] sent join-game for id={identity.id}")
        except NotConnected:
            log.info('[rejoin] connection went away before join-game could be sent')

    # ---- local intents ----

    def restore_identity(self) -> Optional[Identity]:
        """Load the cached identity so the next join reuses its id."""
        if self.identity_cache is None:
            return None
        identity = self.identity_cache.load()
        if identity is not None:
            self._identity = identity
            self._emit()
        return identity

    def forget_identity(self) -> None:
        self._identity = None
        if self.identity_cache is not None:
            self.identity_cache.clear()
        self._emit()

    async def join(self, display_name: str) -> None:
        name = (display_name or '').strip()
        if not DISPLAY_NAME_MIN <= len(name) <= DISPLAY_NAME_MAX:
            raise InvalidDisplayName(
                f"Username must be between {DISPLAY_NAME_MIN} and {DISPLAY_NAME_MAX} characters"
            )
        if not self.session.is_connected:
            raise NotConnected('Not connected to server')
        user_id = self._identity.id if self._identity is not None else None
        await self.session.publish('join-game', JoinGame(display_name=name, user_id=user_id).to_dict())

    # ---- submission bookkeeping (used by the submission controller) ----

    def begin_submission(self) -> int:
        self._submission_seq += 1
        self._in_flight_since = self._clock()
        self._emit()
        return self._submission_seq

    def clear_submission(self, token: Optional[int] = None) -> bool:
        """Clear the in-flight flag; with a token, only if it is still that submission's."""
        if self._in_flight_since is None:
            return False
        if token is not None and token != self._submission_seq:
            return False
        self._in_flight_since = None
        self._emit()
        return True

    def apply_submission_outcome(self, outcome: SubmissionOutcome, round_token: int, token: Optional[int] = None) -> bool:
        """Apply a result that came back over the fallback path."""
        if round_token != self._round_seq:
            log.info('[fallback-result-discarded] question changed while the request was outstanding')
            return False
        self._outcome = outcome
        if token is None or token == self._submission_seq:
            self._in_flight_since = None
        self._emit()
        return True

    # ---- server events ----

    def _on_joined(self, message: JoinedSuccessfully) -> None:
        try:
            identity = Identity(id=message.user_id, display_name=message.display_name)
        except ValidationError as e:
            log.warning(f"[event-dropped] event=joined-successfully invalid identity: {e.error_count()} error(s)")
            return
        self._identity = identity
        self._participant_count = message.participant_count
        if self._phase is GamePhase.IDLE:
            self._phase = GamePhase.JOINED_WAITING
            self._outcome = None
        if self.identity_cache is not None:
            try:
                self.identity_cache.save(identity)
            except OSError as e:
                log.warning(f"[identity-cache] could not persist identity: {e}")
        log.info(f"[joined] id={identity.id} name={identity.display_name} participants={message.participant_count}")
        self._emit()

    def _on_new_question(self, message: NewQuestion) -> None:
        self._replace_round(message.question, message.round_state)
        log.info(f"[new-question] id={message.question.id} difficulty={message.question.difficulty}")
        self._emit()

    def _replace_round(self, question: Question, round_state: RoundState) -> None:
        self._question = question
        self._round_state = round_state
        self._participant_count = round_state.participant_count
        self._outcome = None
        self._in_flight_since = None
        self._correct_answer = None
        self._question_started_at = self._clock()
        self._round_seq += 1
        if round_state.winner is not None:
            self._phase = GamePhase.ROUND_CONCLUDED
        else:
            self._phase = GamePhase.QUESTION_ACTIVE

    def _on_submission_result(self, outcome: SubmissionOutcome) -> None:
        if self._phase is not GamePhase.QUESTION_ACTIVE:
            log.info(f"[result-ignored] phase={self._phase.value}")
            return
        if outcome.user_id and self._identity is not None and outcome.user_id != self._identity.id:
            log.debug(f"[result-ignored] addressed to user={outcome.user_id}")
            return
        self._outcome = outcome
        self._in_flight_since = None
        log.info(f"[submission-result] correct={outcome.is_correct} winner={outcome.is_winner} time={outcome.time_taken_ms}ms")
        self._emit()

    def _on_winner_announced(self, message: WinnerAnnounced) -> None:
        if self._phase is not GamePhase.QUESTION_ACTIVE or self._round_state is None:
            log.info(f"[winner-ignored] phase={self._phase.value}")
            return
        winner = WinnerInfo(
            user_id=message.winner.user_id,
            display_name=message.winner.display_name,
            submission_time_ms=message.winner.time_taken_ms,
        )
        self._round_state = self._round_state.model_copy(update={'is_active': False, 'winner': winner})
        self._correct_answer = message.correct_answer
        self._phase = GamePhase.ROUND_CONCLUDED
        log.info(f"[winner] name={winner.display_name} answer={message.correct_answer}")
        self._emit()

    def _on_participant_change(self, message: ParticipantChange) -> None:
        self._participant_count = message.participant_count
        if self._round_state is not None:
            self._round_state = self._round_state.model_copy(update={'participant_count': message.participant_count})
        self._emit()

    def _on_server_error(self, message: ServerError) -> None:
        log.warning(f"[server-error] {message.message}")
        self._report(RemoteError(message.message))

    # ---- fallback snapshots ----

    def apply_current_question(self, snapshot: CurrentQuestion) -> None:
        """Apply a ``GET current-question`` response.

        The same question only refreshes the round state; a different one is
        handled like ``new-question``.
        """
        self._participant_count = snapshot.participant_count
        if snapshot.question is None:
            self._emit()
            return
        round_state = RoundState(
            is_active=snapshot.is_active and snapshot.winner is None,
            participant_count=snapshot.participant_count,
            winner=snapshot.winner,
        )
        if self._question is not None and self._question.id == snapshot.question.id:
            self._round_state = round_state
            if round_state.winner is not None:
                self._phase = GamePhase.ROUND_CONCLUDED
        else:
            self._replace_round(snapshot.question, round_state)
        self._emit()
