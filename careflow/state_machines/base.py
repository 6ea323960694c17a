"""
Base state machine class for flow state machines.

Provides common functionality for transition logging and flow info retrieval.
"""

from typing import Any, Dict, Optional

import structlog
from statemachine import StateMachine


class FlowMachine(StateMachine):
    """
    Base class for flow state machines.

    Features:
    - State value kept on the model's `state` field on every transition
    - Structured logging on every transition
    - get_flow_info() for API responses
    """

    def __init__(
        self,
        model: Optional[Any] = None,
        user_id: Optional[str] = None,
        **kwargs
    ):
        """
        Initialize flow machine.

        Args:
            model: Object holding the flow's state and context
            user_id: User ID for logging
            **kwargs: Additional context passed to StateMachine (e.g. start_value)
        """
        self.user_id = user_id
        self.logger = structlog.get_logger(__name__)
        self.error_code: Optional[str] = None
        self.error_message: Optional[str] = None
        super().__init__(model=model, **kwargs)

    def get_flow_info(self) -> Dict[str, Any]:
        """
        Returns current state and error info for API responses.
        """
        return {
            "state": self.current_state.id,
            "final": self.current_state.final,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }

    def record_error(self, code: Optional[str], message: Optional[str]) -> None:
        self.error_code = code
        self.error_message = message

    def clear_error(self) -> None:
        self.record_error(None, None)

    def log_transition(self, event: str, from_state: str, to_state: str):
        """
        Log state transition with structured logging.

        Args:
            event: Event name that triggered transition
            from_state: Previous state
            to_state: New state
        """
        self.logger.info(
            "state_transition",
            transition_event=event,
            from_state=from_state,
            to_state=to_state,
            user_id=self.user_id,
            model_id=getattr(self.model, "id", None),
        )
