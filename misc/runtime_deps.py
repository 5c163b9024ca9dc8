from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable


@dataclass(frozen=True)
class RuntimeDeps:
    # core
    store: Any
    settings: Any

    # reminders
    reminder_scheduler: Any
    reminder_loop_func: Callable

    # roles
    mayor_aggregate_role_name: str
