"""Job lifecycle: state graph and the registry that owns job records."""

from .state import TERMINAL_STATUSES, TRANSITIONS, can_transition, ensure_transition, is_terminal

__all__ = ["TERMINAL_STATUSES", "TRANSITIONS", "can_transition", "ensure_transition", "is_terminal"]
