"""Follow-up escalation chains.

Each dispatched occurrence gets an EscalationChain: a small state machine

    sent(1) -> sent(2) -> ... -> sent(max_attempts) -> stopped

that advances one step per follow-up delay unless the dose is taken, in which
case it goes straight to stopped. Chains live in a FollowUpQueue, a delayed
task queue the scheduler drains with `pop_due(now)`; nothing here sleeps or
reads the clock.
"""

import enum
import heapq
import itertools
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Tuple

from schemas import MedicationEntry, UserProfile


class ChainState(enum.Enum):
    SENT = "sent"
    STOPPED = "stopped"


@dataclass
class EscalationChain:
    """Notification chain for one (subject, medication, date, time) occurrence."""

    subject: UserProfile
    medication: MedicationEntry
    scheduled_time: str
    date: date
    next_due_at: datetime
    max_attempts: int = 4
    attempt: int = 1
    state: ChainState = ChainState.SENT
    failures: List[int] = field(default_factory=list)

    @property
    def key(self) -> Tuple[str, str, date, str]:
        return (self.subject.id, self.medication.id, self.date, self.scheduled_time)

    @property
    def stopped(self) -> bool:
        return self.state is ChainState.STOPPED

    @property
    def next_attempt(self) -> int:
        return self.attempt + 1

    def advance(self, now: datetime, delay: timedelta) -> ChainState:
        """Record that attempt `next_attempt` went out (or was tried)."""
        if self.stopped:
            return self.state
        self.attempt += 1
        if self.attempt >= self.max_attempts:
            self.state = ChainState.STOPPED
        else:
            self.next_due_at = now + delay
        return self.state

    def stop(self) -> None:
        self.state = ChainState.STOPPED


class FollowUpQueue:
    """Pending escalation chains ordered by when their next follow-up is due."""

    def __init__(self):
        self._heap: List[Tuple[datetime, int, Tuple]] = []
        self._chains: Dict[Tuple, EscalationChain] = {}
        self._counter = itertools.count()

    def __len__(self):
        return len(self._chains)

    def __contains__(self, key) -> bool:
        return key in self._chains

    def get(self, key) -> Optional[EscalationChain]:
        return self._chains.get(key)

    def schedule(self, chain: EscalationChain) -> None:
        """Queue (or re-queue) a chain for its next_due_at."""
        if chain.stopped:
            self._chains.pop(chain.key, None)
            return
        self._chains[chain.key] = chain
        heapq.heappush(self._heap, (chain.next_due_at, next(self._counter), chain.key))

    def cancel(self, subject_id: str, medication_id: str, day: Optional[date] = None) -> int:
        """Stop every pending chain for a medication, on `day` or on any date.

        Returns:
            int: Number of chains cancelled
        """
        keys = [
            key for key in self._chains
            if key[0] == subject_id and key[1] == medication_id
            and (day is None or key[2] == day)
        ]
        for key in keys:
            self._chains.pop(key).stop()
        return len(keys)

    def pop_due(self, now: datetime) -> List[EscalationChain]:
        """Remove and return chains whose follow-up is due, earliest first.

        Stale heap entries (cancelled or rescheduled chains) are dropped.
        """
        due = []
        while self._heap and self._heap[0][0] <= now:
            due_at, _, key = heapq.heappop(self._heap)
            chain = self._chains.get(key)
            if chain is None or chain.next_due_at != due_at:
                continue
            del self._chains[key]
            due.append(chain)
        return due

    def next_due_at(self) -> Optional[datetime]:
        while self._heap:
            due_at, _, key = self._heap[0]
            chain = self._chains.get(key)
            if chain is not None and chain.next_due_at == due_at:
                return due_at
            heapq.heappop(self._heap)
        return None

    def pending(self) -> List[EscalationChain]:
        return sorted(self._chains.values(), key=lambda c: c.next_due_at)
