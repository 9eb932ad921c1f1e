"""
PersistenceStrategy interface for pluggable storage backends.

The foraging core never writes to storage directly. Simulators, the collection
detector and the round orchestrator append records to an ``Outbox``; callers
hand the outbox to a ``PersistenceStrategy`` at their own pace. From the core's
perspective every append is fire-and-forget.

Two included implementations:
1. InMemoryPersistence - Dict-based storage, data lost on exit (testing, prototyping)
2. JsonPersistence - JSON-lines files per session (small studies, easy inspection)

Usage pattern:
    persistence = InMemoryPersistence()  # or JsonPersistence("sessions")
    await persistence.initialize()

    await persistence.append_movement_batch(samples)
    await persistence.append_event(event)
    await persistence.append_round(round_record)

    await persistence.close()
"""

import asyncio
import json
import shutil
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel

from .schemas import GameEvent, MovementSample, ParticipantProfile, Round, SessionRecord

RecordT = TypeVar("RecordT", bound=BaseModel)


class PersistenceStrategy(ABC):
    """Abstract base class for study data storage.

    Method categories:
    1. Lifecycle: initialize(), close()
    2. Participants: save_participant(), get_participant()
    3. Sessions: save_session(), update_session_status(), get_session(), delete_session()
    4. Data stream: append_movement_batch(), append_event(), append_round()
    5. Reads: get_movements(), get_events(), get_rounds()

    Records are immutable once appended; the stream methods only ever add.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare the backend (create directories, open connections)."""

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources. Stored data stays readable afterward."""

    @abstractmethod
    async def save_participant(self, profile: ParticipantProfile) -> None:
        """Store the participant profile, replacing any previous one for the key."""

    @abstractmethod
    async def get_participant(self, participant_key: str) -> Optional[ParticipantProfile]:
        """
        Look up a participant by key.

        Returns:
            ParticipantProfile if known, None otherwise
        """

    @abstractmethod
    async def save_session(self, session: SessionRecord) -> None:
        """Store session metadata."""

    @abstractmethod
    async def update_session_status(
        self,
        session_id: str,
        status: str,
        *,
        end_timestamp: Optional[datetime] = None,
        rounds_completed: Optional[int] = None,
        maze_completed: Optional[bool] = None,
    ) -> None:
        """
        Update the progress fields of a stored session.

        Unknown session ids are ignored.
        """

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        """Return stored session metadata, or None."""

    @abstractmethod
    async def append_movement_batch(self, samples: List[MovementSample]) -> None:
        """
        Append a batch of movement samples.

        Args:
            samples: Samples in production order; may span one session only
        """

    @abstractmethod
    async def append_event(self, event: GameEvent) -> None:
        """Append one discrete event."""

    @abstractmethod
    async def append_round(self, round_record: Round) -> None:
        """Append one finalized round."""

    @abstractmethod
    async def get_movements(
        self, session_id: str, round_index: Optional[int] = None
    ) -> List[MovementSample]:
        """Return a session's samples in append order, optionally for one round."""

    @abstractmethod
    async def get_events(
        self, session_id: str, round_index: Optional[int] = None
    ) -> List[GameEvent]:
        """Return a session's events in append order, optionally for one round."""

    @abstractmethod
    async def get_rounds(self, session_id: str) -> List[Round]:
        """Return a session's finalized rounds in append order."""

    @abstractmethod
    async def delete_session(self, session_id: str) -> None:
        """Delete a session and everything recorded under it."""


def _for_round(records: List[RecordT], round_index: Optional[int]) -> List[RecordT]:
    if round_index is None:
        return list(records)
    return [record for record in records if record.round_index == round_index]


def _session_updates(
    status: str,
    end_timestamp: Optional[datetime],
    rounds_completed: Optional[int],
    maze_completed: Optional[bool],
) -> Dict[str, object]:
    updates: Dict[str, object] = {"status": status}
    if end_timestamp is not None:
        updates["end_timestamp"] = end_timestamp
    if rounds_completed is not None:
        updates["rounds_completed"] = rounds_completed
    if maze_completed is not None:
        updates["maze_completed"] = maze_completed
    return updates


class InMemoryPersistence(PersistenceStrategy):
    """In-memory persistence using Python dicts (no files, no database).

    Data is ephemeral and lost when the process exits. ``close()`` keeps the
    data so tests can read it back after a session finishes.
    """

    def __init__(self):
        self.participants: Dict[str, ParticipantProfile] = {}
        self.sessions: Dict[str, SessionRecord] = {}
        self.movements: Dict[str, List[MovementSample]] = {}
        self.events: Dict[str, List[GameEvent]] = {}
        self.rounds: Dict[str, List[Round]] = {}

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def save_participant(self, profile: ParticipantProfile) -> None:
        self.participants[profile.participant_key] = profile

    async def get_participant(self, participant_key: str) -> Optional[ParticipantProfile]:
        return self.participants.get(participant_key)

    async def save_session(self, session: SessionRecord) -> None:
        self.sessions[session.session_id] = session

    async def update_session_status(
        self,
        session_id: str,
        status: str,
        *,
        end_timestamp: Optional[datetime] = None,
        rounds_completed: Optional[int] = None,
        maze_completed: Optional[bool] = None,
    ) -> None:
        session = self.sessions.get(session_id)
        if session is None:
            return
        updates = _session_updates(status, end_timestamp, rounds_completed, maze_completed)
        self.sessions[session_id] = session.model_copy(update=updates)

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        return self.sessions.get(session_id)

    async def append_movement_batch(self, samples: List[MovementSample]) -> None:
        for sample in samples:
            self.movements.setdefault(sample.session_id, []).append(sample)

    async def append_event(self, event: GameEvent) -> None:
        self.events.setdefault(event.session_id, []).append(event)

    async def append_round(self, round_record: Round) -> None:
        self.rounds.setdefault(round_record.session_id, []).append(round_record)

    async def get_movements(
        self, session_id: str, round_index: Optional[int] = None
    ) -> List[MovementSample]:
        return _for_round(self.movements.get(session_id, []), round_index)

    async def get_events(
        self, session_id: str, round_index: Optional[int] = None
    ) -> List[GameEvent]:
        return _for_round(self.events.get(session_id, []), round_index)

    async def get_rounds(self, session_id: str) -> List[Round]:
        return list(self.rounds.get(session_id, []))

    async def delete_session(self, session_id: str) -> None:
        for store in (self.sessions, self.movements, self.events, self.rounds):
            store.pop(session_id, None)


class JsonPersistence(PersistenceStrategy):
    """File-based persistence using JSON and JSON Lines.

    Directory structure:
    ```
    {base_path}/
      participants/
        {participant_key}.json    # ParticipantProfile
      sessions/
        {session_id}/
          session.json            # SessionRecord
          movements.jsonl         # one MovementSample per line
          events.jsonl            # one GameEvent per line
          rounds.jsonl            # one Round per line
    ```

    Streams are append-only JSONL; metadata files are pretty-printed JSON.
    All file I/O runs in a worker thread (asyncio.to_thread).
    """

    def __init__(self, base_path: Path | str = "mousemaze_sessions"):
        self.base_path = Path(base_path)

    async def initialize(self) -> None:
        await asyncio.to_thread(self.base_path.mkdir, parents=True, exist_ok=True)

    async def close(self) -> None:
        # Nothing to clean up for JSON persistence
        return None

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    async def save_participant(self, profile: ParticipantProfile) -> None:
        path = self.base_path / "participants" / f"{profile.participant_key}.json"
        await self._write_json(path, profile)

    async def get_participant(self, participant_key: str) -> Optional[ParticipantProfile]:
        path = self.base_path / "participants" / f"{participant_key}.json"
        return await self._read_json(path, ParticipantProfile)

    async def save_session(self, session: SessionRecord) -> None:
        await self._write_json(self._session_dir(session.session_id) / "session.json", session)

    async def update_session_status(
        self,
        session_id: str,
        status: str,
        *,
        end_timestamp: Optional[datetime] = None,
        rounds_completed: Optional[int] = None,
        maze_completed: Optional[bool] = None,
    ) -> None:
        session = await self.get_session(session_id)
        if session is None:  # Nothing to update yet
            return
        updates = _session_updates(status, end_timestamp, rounds_completed, maze_completed)
        await self.save_session(session.model_copy(update=updates))

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        return await self._read_json(self._session_dir(session_id) / "session.json", SessionRecord)

    async def delete_session(self, session_id: str) -> None:
        session_dir = self._session_dir(session_id)
        if session_dir.exists():
            await asyncio.to_thread(shutil.rmtree, session_dir)

    # ------------------------------------------------------------------
    # Data stream
    # ------------------------------------------------------------------

    async def append_movement_batch(self, samples: List[MovementSample]) -> None:
        by_session: Dict[str, List[MovementSample]] = {}
        for sample in samples:
            by_session.setdefault(sample.session_id, []).append(sample)
        for session_id, batch in by_session.items():
            await self._append_lines(self._session_dir(session_id) / "movements.jsonl", batch)

    async def append_event(self, event: GameEvent) -> None:
        await self._append_lines(self._session_dir(event.session_id) / "events.jsonl", [event])

    async def append_round(self, round_record: Round) -> None:
        path = self._session_dir(round_record.session_id) / "rounds.jsonl"
        await self._append_lines(path, [round_record])

    async def get_movements(
        self, session_id: str, round_index: Optional[int] = None
    ) -> List[MovementSample]:
        path = self._session_dir(session_id) / "movements.jsonl"
        return _for_round(await self._read_lines(path, MovementSample), round_index)

    async def get_events(
        self, session_id: str, round_index: Optional[int] = None
    ) -> List[GameEvent]:
        path = self._session_dir(session_id) / "events.jsonl"
        return _for_round(await self._read_lines(path, GameEvent), round_index)

    async def get_rounds(self, session_id: str) -> List[Round]:
        return await self._read_lines(self._session_dir(session_id) / "rounds.jsonl", Round)

    # ------------------------------------------------------------------
    # File helpers
    # ------------------------------------------------------------------

    def _session_dir(self, session_id: str) -> Path:
        return self.base_path / "sessions" / session_id

    async def _write_json(self, path: Path, record: BaseModel) -> None:
        await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
        payload = record.model_dump(mode="json")
        await asyncio.to_thread(path.write_text, json.dumps(payload, indent=2), "utf-8")

    async def _read_json(self, path: Path, model: Type[RecordT]) -> Optional[RecordT]:
        if not path.exists():
            return None
        payload = await asyncio.to_thread(path.read_text, "utf-8")
        return model.model_validate_json(payload)

    async def _append_lines(self, path: Path, records: List[BaseModel]) -> None:
        if not records:
            return
        await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
        lines = [json.dumps(record.model_dump(mode="json")) for record in records]

        def _append() -> None:
            with path.open("a", encoding="utf-8") as handle:
                for line in lines:
                    handle.write(line)
                    handle.write("\n")

        await asyncio.to_thread(_append)

    async def _read_lines(self, path: Path, model: Type[RecordT]) -> List[RecordT]:
        if not path.exists():
            return []

        def _read() -> List[str]:
            return path.read_text("utf-8").splitlines()

        lines = await asyncio.to_thread(_read)
        return [model.model_validate_json(line) for line in lines if line]


class Outbox:
    """Records produced by the core and not yet handed to a backend.

    Movement batches keep their boundaries so each becomes one
    ``append_movement_batch`` call.
    """

    def __init__(self):
        self.movement_batches: List[List[MovementSample]] = []
        self.events: List[GameEvent] = []
        self.rounds: List[Round] = []

    def __len__(self) -> int:
        samples = sum(len(batch) for batch in self.movement_batches)
        return samples + len(self.events) + len(self.rounds)

    def add_movement_batch(self, batch: List[MovementSample]) -> None:
        if batch:
            self.movement_batches.append(list(batch))

    def add_event(self, event: GameEvent) -> None:
        self.events.append(event)

    def add_round(self, round_record: Round) -> None:
        self.rounds.append(round_record)

    def drain(self) -> "Outbox":
        """Move every pending record into a new Outbox and return it."""
        drained = Outbox()
        drained.movement_batches, self.movement_batches = self.movement_batches, []
        drained.events, self.events = self.events, []
        drained.rounds, self.rounds = self.rounds, []
        return drained

    async def flush_to(self, persistence: PersistenceStrategy) -> int:
        """Write pending records to ``persistence``; returns how many were written.

        Records are drained before the first await so that anything produced
        while writing stays queued for the next flush.
        """
        pending = self.drain()
        for batch in pending.movement_batches:
            await persistence.append_movement_batch(batch)
        for event in pending.events:
            await persistence.append_event(event)
        for round_record in pending.rounds:
            await persistence.append_round(round_record)
        return len(pending)
