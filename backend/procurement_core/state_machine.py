"""
EVENT-DRIVEN STATE MACHINE

A declarative state machine for entity lifecycles:
- Events registered with their allowed source states and a target state
- Event resolution from the current state (rejects anything else)
- Status update and history entry builders
- Introspection for callers that render available actions

Usage:
    po_machine = StateMachine("purchase_order")
    po_machine.register("approve", ["pending_approval"], "approved", notify=True)

    transition = po_machine.resolve("approve", order["status"])
    update = po_machine.get_status_update(transition.target)
"""

from typing import Dict, Any, Optional, List, Iterable, Set, FrozenSet
from datetime import datetime, timezone
import logging

from procurement_core.errors import InvalidTransitionError

logger = logging.getLogger(__name__)


# =============================================================================
# TRANSITION DEFINITION
# =============================================================================

class Transition:
    """Definition of an event and the states it may fire from."""

    def __init__(
        self,
        event: str,
        sources: Iterable[str],
        target: str,
        notify: bool = False,
        description: str = ""
    ):
        self.event = event
        self.sources: FrozenSet[str] = frozenset(sources)
        self.target = target
        self.notify = notify
        self.description = description

    def allows(self, from_state: str) -> bool:
        return from_state in self.sources

    def __repr__(self):
        return f"Transition({self.event}: {sorted(self.sources)} -> {self.target})"


# =============================================================================
# STATE MACHINE
# =============================================================================

class StateMachine:
    """
    Lifecycle definition for one entity type.

    The machine holds no entity state; callers read the current status,
    resolve the event and persist the resulting update themselves.
    """

    def __init__(
        self,
        entity_name: str,
        status_field: str = "status",
        history_field: Optional[str] = "state_history"
    ):
        """
        Args:
            entity_name: Name of the entity (for logging/errors)
            status_field: Field name that holds current state
            history_field: Field name for transition history (None to disable)
        """
        self.entity_name = entity_name
        self.status_field = status_field
        self.history_field = history_field

        self._transitions: Dict[str, Transition] = {}
        self._states: Set[str] = set()
        self._terminal: Set[str] = set()

        logger.info(f"[STATE_MACHINE] Initialized for entity: {entity_name}")

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def register(
        self,
        event: str,
        sources: Iterable[str],
        target: str,
        notify: bool = False,
        description: str = ""
    ) -> "StateMachine":
        """
        Register an event.

        Args:
            event: Event name (e.g. "approve")
            sources: States the event may fire from
            target: Resulting state
            notify: Whether the transition notifies an external party
            description: Human-readable description

        Returns:
            self (for chaining)
        """
        if event in self._transitions:
            logger.warning(
                f"[STATE_MACHINE] Overwriting event {self.entity_name}: '{event}'"
            )

        transition = Transition(event, sources, target, notify=notify, description=description)
        self._transitions[event] = transition

        self._states.update(transition.sources)
        self._states.add(target)

        logger.debug(f"[STATE_MACHINE] Registered {self.entity_name}: {transition!r}")
        return self

    def mark_terminal(self, *states: str) -> "StateMachine":
        """Declare states no event may leave."""
        for state in states:
            for transition in self._transitions.values():
                if transition.allows(state):
                    raise ValueError(
                        f"State '{state}' is a source of '{transition.event}' and cannot be terminal"
                    )
            self._terminal.add(state)
            self._states.add(state)
        return self

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def get_allowed_events(self, from_state: str) -> List[str]:
        """Events that may fire from a given state."""
        return [
            event for event, transition in self._transitions.items()
            if transition.allows(from_state)
        ]

    def can_fire(self, event: str, from_state: str) -> bool:
        transition = self._transitions.get(event)
        return transition is not None and transition.allows(from_state)

    def is_terminal(self, state: str) -> bool:
        return state in self._terminal

    def resolve(self, event: str, from_state: Optional[str]) -> Transition:
        """
        Return the transition for `event` fired from `from_state`.

        Raises InvalidTransitionError if the event is unknown or not
        permitted from that state.
        """
        if from_state is None:
            raise InvalidTransitionError(self.entity_name, "<missing>", event)

        if not self.can_fire(event, from_state):
            allowed = self.get_allowed_events(from_state)
            logger.info(
                f"[STATE_MACHINE] Rejected {self.entity_name}: "
                f"'{event}' from '{from_state}'"
            )
            raise InvalidTransitionError(
                entity=self.entity_name,
                from_state=from_state,
                event=event,
                allowed=allowed
            )

        return self._transitions[event]

    # =========================================================================
    # UPDATE BUILDERS
    # =========================================================================

    def get_status_update(self, to_state: str) -> Dict[str, Any]:
        """
        Get the update dict for changing status.
        """
        now = datetime.now(timezone.utc)
        return {
            self.status_field: to_state,
            "updated_at": now
        }

    def get_history_entry(
        self,
        from_state: Optional[str],
        to_state: str,
        event: str,
        user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Get a history entry for the transition.
        Append to the entity's history_field.
        """
        return {
            "from_state": from_state,
            "to_state": to_state,
            "event": event,
            "transitioned_at": datetime.now(timezone.utc),
            "transitioned_by": user_id
        }

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    def get_states(self) -> List[str]:
        return sorted(self._states)

    def get_transitions(self) -> List[Dict[str, Any]]:
        return [
            {
                "event": t.event,
                "from": sorted(t.sources),
                "to": t.target,
                "notify": t.notify,
                "description": t.description
            }
            for t in self._transitions.values()
        ]

    def get_graph(self) -> Dict[str, List[str]]:
        """State graph as adjacency list."""
        graph: Dict[str, List[str]] = {state: [] for state in self._states}
        for transition in self._transitions.values():
            for source in transition.sources:
                if transition.target not in graph[source]:
                    graph[source].append(transition.target)
        return graph

    def __repr__(self):
        return (
            f"StateMachine({self.entity_name}, "
            f"states={len(self._states)}, "
            f"events={len(self._transitions)})"
        )
