"""
GENERIC ACTION-KEYED STATE MACHINE

A reusable state machine for the escrow entities (milestone, termin, retensi,
additional work, change request) with:
- Transitions registered per action, from one or more source states
- Optional guards returning (allowed, reason)
- Compare-and-set status writes inside the caller's session
- Rejection messages that name the violated precondition

Usage:
    termin_machine = StateMachine("termin", "termins")
    termin_machine.register("request_payment", ["unpaid"], "pending_confirmation",
                            message="Termin sudah diproses")

    # inside a ProjectTransaction
    termin = await termin_machine.apply(db, termin, "request_payment", session=uow.session)

A lost race (another writer moved the status first) surfaces as the same
InvalidTransitionError a stale caller would get, so reapplying an action is
always a no-op failure.
"""

from typing import Dict, Any, Optional, Callable, Awaitable, Iterable, List, Set, Tuple
from datetime import datetime
from pymongo import ReturnDocument
import logging

from adogalo.core.errors import StateGuardError, EscrowValidationError

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class StateMachineError(StateGuardError):
    """Base exception for state machine errors."""
    pass


class InvalidTransitionError(StateMachineError):
    """Raised when the entity is not in a state the action can start from."""

    def __init__(
        self,
        entity: str,
        action: str,
        from_state: Optional[str],
        allowed_from: List[str] = None,
        message: Optional[str] = None,
    ):
        self.entity = entity
        self.action = action
        self.from_state = from_state
        self.allowed_from = allowed_from or []
        message = message or (
            f"Invalid transition for {entity}: '{action}' from '{from_state}'. "
            f"Allowed from: {self.allowed_from}"
        )
        super().__init__(
            message,
            details={
                "entity": entity,
                "action": action,
                "current_status": from_state,
                "allowed_from": self.allowed_from,
            },
        )


class GuardConditionError(StateMachineError):
    """Raised when a guard condition prevents the transition."""

    def __init__(self, entity: str, action: str, reason: str):
        self.entity = entity
        self.action = action
        super().__init__(reason, details={"entity": entity, "action": action})


class UnknownActionError(EscrowValidationError):
    """Raised when the action is not part of the machine."""

    def __init__(self, entity: str, action: str):
        self.entity = entity
        self.action = action
        super().__init__("Aksi tidak valid", details={"entity": entity, "action": action})


# =============================================================================
# TYPE DEFINITIONS
# =============================================================================

# Guard signature: async def guard(entity_doc, context) -> Tuple[bool, str]
GuardCondition = Callable[[Dict[str, Any], Dict[str, Any]], Awaitable[Tuple[bool, str]]]


# =============================================================================
# TRANSITION DEFINITION
# =============================================================================

class Transition:
    """Definition of an action-triggered transition."""

    def __init__(
        self,
        action: str,
        from_states: Iterable[str],
        to_state: Optional[str],
        guard: Optional[GuardCondition] = None,
        message: str = "",
        description: str = ""
    ):
        self.action = action
        self.from_states = tuple(from_states)
        # None means the action is recorded without changing status
        self.to_state = to_state
        self.guard = guard
        self.message = message
        self.description = description

    def __repr__(self):
        return f"Transition({self.action}: {list(self.from_states)} -> {self.to_state})"


# =============================================================================
# STATE MACHINE
# =============================================================================

class StateMachine:
    """
    Action-keyed state machine bound to one MongoDB collection.

    Example:
        machine = StateMachine("milestone", "milestones")
        machine.register("start", ["pending", "pending_additional"], "active")
        machine.register("daily", ["active"], None)

        milestone = await machine.apply(db, milestone, "start", session=session)
    """

    def __init__(
        self,
        entity_name: str,
        collection_name: str,
        status_field: str = "status"
    ):
        self.entity_name = entity_name
        self.collection_name = collection_name
        self.status_field = status_field

        self._transitions: Dict[str, Transition] = {}
        self._states: Set[str] = set()

        logger.info(f"[STATE_MACHINE] Initialized for entity: {entity_name}")

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def register(
        self,
        action: str,
        from_states: Iterable[str],
        to_state: Optional[str],
        guard: Optional[GuardCondition] = None,
        message: str = "",
        description: str = ""
    ) -> "StateMachine":
        """
        Register an action.

        Args:
            action: Action name as sent by the caller
            from_states: States the action may start from
            to_state: Target state, or None for a status-preserving action
            guard: Optional async (entity, context) -> (bool, reason)
            message: Rejection message when the entity is in the wrong state
            description: Human-readable description

        Returns:
            self (for chaining)
        """
        if action in self._transitions:
            logger.warning(
                f"[STATE_MACHINE] Overwriting action {self.entity_name}.{action}"
            )

        transition = Transition(
            action=action,
            from_states=from_states,
            to_state=to_state,
            guard=guard,
            message=message,
            description=description
        )
        self._transitions[action] = transition

        self._states.update(transition.from_states)
        if to_state is not None:
            self._states.add(to_state)

        logger.debug(f"[STATE_MACHINE] Registered {self.entity_name}: {transition}")
        return self

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def get_transition(self, action: str) -> Transition:
        transition = self._transitions.get(action)
        if transition is None:
            raise UnknownActionError(self.entity_name, action)
        return transition

    def get_allowed_actions(self, from_state: str) -> List[str]:
        """Actions that may start from the given state."""
        return [
            action for action, t in self._transitions.items()
            if from_state in t.from_states
        ]

    def can_apply(self, from_state: str, action: str) -> bool:
        """Check the source state only (does not run guards)."""
        transition = self._transitions.get(action)
        return transition is not None and from_state in transition.from_states

    def validate(self, entity_doc: Dict[str, Any], action: str) -> Transition:
        """
        Validate that the action may start from the entity's current state.
        Raises InvalidTransitionError if not.
        """
        transition = self.get_transition(action)
        current = entity_doc.get(self.status_field)

        if current not in transition.from_states:
            raise InvalidTransitionError(
                entity=self.entity_name,
                action=action,
                from_state=current,
                allowed_from=list(transition.from_states),
                message=transition.message or None
            )
        return transition

    async def check_guard(
        self,
        entity_doc: Dict[str, Any],
        transition: Transition,
        context: Dict[str, Any]
    ) -> None:
        """Raises GuardConditionError if the guard rejects."""
        if transition.guard:
            allowed, reason = await transition.guard(entity_doc, context)
            if not allowed:
                raise GuardConditionError(self.entity_name, transition.action, reason)

    # =========================================================================
    # TRANSITION EXECUTION
    # =========================================================================

    async def apply(
        self,
        db,
        entity_doc: Dict[str, Any],
        action: str,
        session: Any = None,
        context: Optional[Dict[str, Any]] = None,
        extra_set: Optional[Dict[str, Any]] = None,
        extra_update: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Execute a transition as a compare-and-set on the status field.

        Returns the updated document. Status-preserving actions return the
        document unchanged after validation.

        Raises:
            UnknownActionError: action not registered
            InvalidTransitionError: wrong source state, or a concurrent writer won
            GuardConditionError: guard rejected
        """
        context = context or {}
        transition = self.validate(entity_doc, action)
        await self.check_guard(entity_doc, transition, context)

        from_state = entity_doc.get(self.status_field)
        if transition.to_state is None:
            return entity_doc

        now = now or datetime.utcnow()
        update = {
            self.status_field: transition.to_state,
            "updated_at": now,
        }
        if extra_set:
            update.update(extra_set)
        operations = {"$set": update}
        if extra_update:
            operations.update(extra_update)

        updated = await db[self.collection_name].find_one_and_update(
            {"_id": entity_doc["_id"], self.status_field: from_state},
            operations,
            return_document=ReturnDocument.AFTER,
            session=session
        )

        if updated is None:
            logger.warning(
                f"[STATE_MACHINE] Lost status race {self.entity_name}:{entity_doc['_id']} "
                f"on '{action}' (expected '{from_state}')"
            )
            raise InvalidTransitionError(
                entity=self.entity_name,
                action=action,
                from_state=from_state,
                allowed_from=list(transition.from_states),
                message=transition.message or None
            )

        logger.info(
            f"[STATE_MACHINE] {self.entity_name}:{entity_doc['_id']} "
            f"'{from_state}' -> '{transition.to_state}' via {action}"
        )
        return updated

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    def get_states(self) -> List[str]:
        return sorted(self._states)

    def get_transitions(self) -> List[Dict[str, Any]]:
        return [
            {
                "action": t.action,
                "from": list(t.from_states),
                "to": t.to_state,
                "description": t.description,
                "has_guard": t.guard is not None
            }
            for t in self._transitions.values()
        ]

    def get_graph(self) -> Dict[str, List[str]]:
        """State graph as adjacency list (status-preserving actions omitted)."""
        graph = {state: [] for state in self._states}
        for t in self._transitions.values():
            if t.to_state is None:
                continue
            for src in t.from_states:
                if t.to_state not in graph[src]:
                    graph[src].append(t.to_state)
        return graph

    def __repr__(self):
        return (
            f"StateMachine({self.entity_name}, "
            f"states={len(self._states)}, "
            f"actions={len(self._transitions)})"
        )
