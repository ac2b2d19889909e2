"""
Secret Santa Matching Module - Constrained Random Matching Engine

RESPONSIBILITIES:
- Exclusion predicate (fuzzy, case-insensitive "members to avoid" check)
- Randomized greedy assigner (scarcity ordering + swap repair)
- Retry controller (bounded attempts, forced fallback completion)
- Final integrity validation (no duplicate santas/giftees, no self-matches)

ISOLATION:
- Pure algorithm logic (no Discord, no storage)
- Randomness is injectable: production uses secrets.SystemRandom,
  tests pass random.Random(seed)
"""

import logging
import secrets
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger("bot.santa.matching")

MAX_ATTEMPTS = 200

# Exclusion entries shorter than this only match names exactly
MIN_SUBSTRING_LENGTH = 3

NO_GIFTEES_REMAINING = "no available giftees remaining"


class MatchingError(Exception):
    """Base class for errors crossing the matching engine boundary"""


class InsufficientParticipants(MatchingError):
    """Raised when fewer than 2 participants are handed to the engine"""

    def __init__(self, count: int):
        self.count = count
        super().__init__(f"Not enough participants to match (need at least 2, found {count})")


class InternalInvariantViolation(MatchingError):
    """Raised when the final match set is not injective - an assigner bug, never expected"""


@dataclass
class Participant:
    """One entry of the matching pool (santa and potential giftee)"""
    id: str
    display_name: Optional[str] = None
    handle: Optional[str] = None
    exclude_list: List[str] = field(default_factory=list)
    eligible: bool = True

    def __post_init__(self):
        if not self.id or not str(self.id).strip():
            raise ValueError("Participant id must be a non-empty string")
        self.id = str(self.id)
        self.exclude_list = [str(entry) for entry in (self.exclude_list or [])]

    @property
    def label(self) -> str:
        return self.display_name or self.handle or self.id

    @property
    def names(self) -> Tuple[str, str]:
        """Names other participants' exclusion entries are compared against"""
        return (self.display_name or self.id, self.handle or self.id)


@dataclass(frozen=True)
class Match:
    sender_id: str
    receive_id: str
    forced: bool = False  # Made by fallback, exclusions ignored


@dataclass(frozen=True)
class UnmatchedParticipant:
    participant: Participant
    reason: str


@dataclass
class AttemptResult:
    """Outcome of a single randomized greedy pass"""
    matches: List[Match]
    unassigned: List[Participant]
    reasons: Dict[str, str]
    swaps: int = 0


@dataclass
class MatchResult:
    matches: List[Match]
    unmatched: List[UnmatchedParticipant]
    success: bool
    attempts: int = 0
    swaps: int = 0
    fallback_used: bool = False
    violations: List[str] = field(default_factory=list)
    diagnostics: Dict[str, str] = field(default_factory=dict)


# ============ EXCLUSION PREDICATE ============

def names_match(entry: str, name: str) -> bool:
    """
    Two-tier fuzzy comparison of an exclusion entry against a name.

    - Exact (case-insensitive, trimmed) match always counts
    - Substring match in either direction only counts for entries of
      3+ characters, so "ab" never knocks out "abcdef"
    """
    entry_norm = (entry or "").strip().lower()
    name_norm = (name or "").strip().lower()
    if not entry_norm or not name_norm:
        return False
    if entry_norm == name_norm:
        return True
    if len(entry_norm) >= MIN_SUBSTRING_LENGTH:
        return entry_norm in name_norm or name_norm in entry_norm
    return False


def _first_hit(owner: Participant, target: Participant) -> Optional[str]:
    for entry in owner.exclude_list:
        if any(names_match(entry, name) for name in target.names):
            return entry
    return None


def find_exclusion(sender: Participant, receiver: Participant) -> Optional[Tuple[Participant, str]]:
    """Return (owner, entry) of the exclusion vetoing this pairing, checking the sender's list first"""
    entry = _first_hit(sender, receiver)
    if entry is not None:
        return sender, entry
    entry = _first_hit(receiver, sender)
    if entry is not None:
        return receiver, entry
    return None


def can_match(sender: Participant, receiver: Participant) -> bool:
    """Symmetric compatibility: no self-match and neither side's list names the other"""
    if sender.id == receiver.id:
        return False
    return find_exclusion(sender, receiver) is None


class Compatibility:
    """
    Exclusion checks for one pool, evaluated once per matching run.

    The fuzzy name comparison is the expensive part of matching, so every
    (santa, giftee) pair is checked up front and the assigner only does
    dict/set lookups afterwards.
    """

    def __init__(self, participants: Sequence[Participant]):
        self.by_id: Dict[str, Participant] = {p.id: p for p in participants}
        self.allowed: Dict[str, List[str]] = {}      # santa id -> giftee ids, pool order
        self.blocked: Dict[str, List[Tuple[Participant, Participant, str]]] = {}
        self.vetoes: Dict[Tuple[str, str], Tuple[Participant, str]] = {}
        self._allowed_sets: Dict[str, set] = {}

        for sender in participants:
            ok, blocked = [], []
            for receiver in participants:
                if receiver.id == sender.id:
                    continue
                veto = find_exclusion(sender, receiver)
                if veto:
                    self.vetoes[(sender.id, receiver.id)] = veto
                    blocked.append((receiver, veto[0], veto[1]))
                else:
                    ok.append(receiver.id)
            self.allowed[sender.id] = ok
            self.blocked[sender.id] = blocked
            self._allowed_sets[sender.id] = set(ok)

    def ok(self, sender_id: str, receiver_id: str) -> bool:
        return receiver_id in self._allowed_sets.get(sender_id, ())

    def counts(self) -> Dict[str, int]:
        return {pid: len(ids) for pid, ids in self.allowed.items()}


def compatibility_counts(participants: Sequence[Participant]) -> Dict[str, int]:
    """Static scarcity score: how many others each participant could be paired with"""
    return Compatibility(participants).counts()


def describe_unassignable(sender: Participant, participants: Sequence[Participant],
                          claimed: Dict[str, str], compat: Optional[Compatibility] = None) -> str:
    """
    Human-readable reason a santa could not be given a giftee.

    Moderators see this text, so it names every giftee that was vetoed
    and whose list did it. If nobody was vetoed, everyone was simply taken.
    """
    compat = compat or Compatibility(participants)
    blocked = []
    for receiver, owner, entry in compat.blocked[sender.id]:
        whose = "their own" if owner.id == sender.id else f"{owner.label}'s"
        blocked.append(f"{receiver.label} (blocked by {whose} exclusion '{entry}')")

    if not blocked:
        return NO_GIFTEES_REMAINING

    taken = sum(1 for rid in compat.allowed[sender.id] if rid in claimed)
    reason = "no compatible giftee: " + "; ".join(blocked)
    if taken:
        reason += f"; {taken} other giftee{'s' if taken != 1 else ''} already claimed"
    return reason


# ============ RANDOMIZED GREEDY ASSIGNER ============

def _apply(assignments: Dict[str, str], claimed: Dict[str, str], sender_id: str, receiver_id: str):
    old = assignments.get(sender_id)
    if old is not None and claimed.get(old) == sender_id:
        del claimed[old]
    assignments[sender_id] = receiver_id
    claimed[receiver_id] = sender_id


def _plan_relocation(mover_id: str, compat: Compatibility, assignments: Dict[str, str],
                     claimed: Dict[str, str], rng, depth: int, visited: frozenset) -> Optional[List[Tuple[str, str]]]:
    """
    Find moves that shift `mover_id` off its current giftee.

    Returns (sender_id, new_receiver_id) moves in the order they must be
    applied, or None. With depth > 0 the mover may take another santa's
    giftee, provided that santa can itself be relocated (one hop per level).
    """
    free = [rid for rid in compat.allowed[mover_id] if rid not in claimed]
    if free:
        return [(mover_id, rng.choice(free))]

    if depth <= 0:
        return None

    pairs = [(s, r) for s, r in assignments.items() if s not in visited and compat.ok(mover_id, r)]
    rng.shuffle(pairs)
    for other_id, other_receiver in pairs:
        chain = _plan_relocation(other_id, compat, assignments, claimed, rng, depth - 1, visited | {other_id})
        if chain is not None:
            return chain + [(mover_id, other_receiver)]
    return None


def _swap_repair(sender: Participant, compat: Compatibility, assignments: Dict[str, str],
                 claimed: Dict[str, str], rng, chain_depth: int) -> bool:
    """Free up an already-claimed compatible giftee for `sender` by moving its santa elsewhere"""
    pairs = [(s, r) for s, r in assignments.items() if compat.ok(sender.id, r)]
    rng.shuffle(pairs)
    for other_id, taken in pairs:
        plan = _plan_relocation(other_id, compat, assignments, claimed, rng, chain_depth, frozenset({other_id}))
        if plan is None:
            continue
        for mover_id, new_receiver in plan:
            _apply(assignments, claimed, mover_id, new_receiver)
        _apply(assignments, claimed, sender.id, taken)
        logger.debug(f"Swap repair: {sender.label} took {compat.by_id[taken].label} via {len(plan)} move(s)")
        return True
    return False


def attempt_match(participants: Sequence[Participant], rng, chain_depth: int = 1,
                  compat: Optional[Compatibility] = None) -> AttemptResult:
    """
    Build one candidate matching.

    ALGORITHM:
    1. Score each participant by how many others they could pair with
    2. Shuffle, then stable-sort by that score (scarcest first, ties keep shuffle order)
    3. Each santa takes a random free compatible giftee
    4. No free giftee -> swap repair; still nothing -> left unassigned with a reason
    """
    compat = compat or Compatibility(participants)
    counts = compat.counts()

    order = list(participants)
    rng.shuffle(order)
    order.sort(key=lambda p: counts[p.id])

    assignments: Dict[str, str] = {}  # santa id -> giftee id
    claimed: Dict[str, str] = {}      # giftee id -> santa id
    unassigned: List[Participant] = []
    reasons: Dict[str, str] = {}
    swaps = 0

    for sender in order:
        if sender.id in assignments:
            continue

        free = [rid for rid in compat.allowed[sender.id] if rid not in claimed]
        if free:
            _apply(assignments, claimed, sender.id, rng.choice(free))
            continue

        if _swap_repair(sender, compat, assignments, claimed, rng, chain_depth):
            swaps += 1
            continue

        unassigned.append(sender)
        reasons[sender.id] = describe_unassignable(sender, participants, claimed, compat)

    matches = [Match(p.id, assignments[p.id]) for p in participants if p.id in assignments]
    return AttemptResult(matches=matches, unassigned=unassigned, reasons=reasons, swaps=swaps)


# ============ RETRY CONTROLLER ============

def force_complete(participants: Sequence[Participant], assignments: Dict[str, str],
                   unassigned: Sequence[Participant], rng,
                   compat: Optional[Compatibility] = None) -> Tuple[List[str], List[str], List[UnmatchedParticipant]]:
    """
    Last-resort completion that ignores exclusion lists.

    Mutates `assignments` in place. Returns (forced santa ids, violation
    notes, participants that still could not be placed).

    Receivers that happen to respect exclusions are preferred. If the only
    giftee left is the santa themself, they trade places with an existing
    pair: that pair's santa gives to them instead, and they take the freed giftee.
    """
    compat = compat or Compatibility(participants)
    claimed = {r: s for s, r in assignments.items()}
    forced: List[str] = []
    still_unmatched: List[UnmatchedParticipant] = []

    for sender in unassigned:
        open_receivers = [r for r in participants if r.id not in claimed and r.id != sender.id]
        preferred = [r for r in open_receivers if compat.ok(sender.id, r.id)]

        if preferred or open_receivers:
            receiver = rng.choice(preferred or open_receivers)
            _apply(assignments, claimed, sender.id, receiver.id)
            forced.append(sender.id)
            continue

        if sender.id not in claimed and assignments:
            # Only the sender themself is left unclaimed
            pairs = list(assignments.items())
            rng.shuffle(pairs)
            pairs.sort(key=lambda pair: not (compat.ok(sender.id, pair[1]) and compat.ok(pair[0], sender.id)))
            other_id, other_receiver = pairs[0]
            _apply(assignments, claimed, other_id, sender.id)
            _apply(assignments, claimed, sender.id, other_receiver)
            forced.extend([other_id, sender.id])
            continue

        logger.error(f"Fallback could not place {sender.label}: {NO_GIFTEES_REMAINING}")
        still_unmatched.append(UnmatchedParticipant(sender, NO_GIFTEES_REMAINING))

    violations = []
    for sender_id in dict.fromkeys(forced):
        receiver_id = assignments[sender_id]
        veto = compat.vetoes.get((sender_id, receiver_id))
        if veto:
            owner, entry = veto
            violations.append(
                f"{compat.by_id[sender_id].label} → {compat.by_id[receiver_id].label} "
                f"ignores {owner.label}'s exclusion '{entry}'"
            )

    return list(dict.fromkeys(forced)), violations, still_unmatched


def validate_match_integrity(matches: Sequence[Match]) -> None:
    """
    Fatal consistency check on the final match set.

    Raises InternalInvariantViolation on duplicate santas, duplicate
    giftees or self-matches. Never caught inside the engine.
    """
    senders = [m.sender_id for m in matches]
    receivers = [m.receive_id for m in matches]

    if len(senders) != len(set(senders)):
        dupes = sorted({s for s in senders if senders.count(s) > 1})
        raise InternalInvariantViolation(f"Duplicate santas found in matches: {dupes}")
    if len(receivers) != len(set(receivers)):
        dupes = sorted({r for r in receivers if receivers.count(r) > 1})
        raise InternalInvariantViolation(f"Duplicate giftees found in matches: {dupes}")
    for m in matches:
        if m.sender_id == m.receive_id:
            raise InternalInvariantViolation(f"Self-match detected: {m.sender_id}")


def match_all(participants: Sequence[Participant], rng=None, max_attempts: int = MAX_ATTEMPTS) -> MatchResult:
    """
    Match every participant to exactly one giftee.

    Runs attempt_match up to `max_attempts` times and returns the first
    complete matching. If none is found, the final attempt is completed by
    force_complete and the result is flagged with fallback_used/violations.

    Raises:
        InsufficientParticipants: fewer than 2 participants
        InternalInvariantViolation: final duplicate check failed
    """
    participants = list(participants)
    if len(participants) < 2:
        raise InsufficientParticipants(len(participants))
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    ids = [p.id for p in participants]
    if len(ids) != len(set(ids)):
        raise ValueError("Participant ids must be unique")

    rng = rng or secrets.SystemRandom()
    compat = Compatibility(participants)

    result: Optional[AttemptResult] = None
    for attempt in range(1, max_attempts + 1):
        result = attempt_match(participants, rng, compat=compat)
        if not result.unassigned:
            validate_match_integrity(result.matches)
            logger.info(f"Matched {len(result.matches)} participants on attempt {attempt} ({result.swaps} swap(s))")
            return MatchResult(
                matches=result.matches,
                unmatched=[],
                success=True,
                attempts=attempt,
                swaps=result.swaps,
            )
        logger.debug(f"Attempt {attempt}: {len(result.unassigned)} participant(s) left unassigned")

    logger.warning(
        f"No conflict-free matching after {max_attempts} attempts; "
        f"using fallback for {len(result.unassigned)} participant(s)"
    )

    assignments = {m.sender_id: m.receive_id for m in result.matches}
    forced, violations, unmatched = force_complete(participants, assignments, result.unassigned, rng, compat)
    for note in violations:
        logger.warning(f"Fallback match violates exclusions: {note}")

    forced_ids = set(forced)
    matches = [
        Match(p.id, assignments[p.id], forced=p.id in forced_ids)
        for p in participants if p.id in assignments
    ]
    validate_match_integrity(matches)

    return MatchResult(
        matches=matches,
        unmatched=unmatched,
        success=not unmatched,
        attempts=max_attempts,
        swaps=result.swaps,
        fallback_used=True,
        violations=violations,
        diagnostics=dict(result.reasons),
    )
