"""
Canopy Hook Manager — per-runner pre/post listeners keyed by task name.

Each (task name, moment) has one listener list and one fan-out callable built
lazily around that list. Registering or removing a listener mutates the list
in place, so a fan-out already injected into a running task sees a stable
snapshot while later tasks see the change.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Tuple

from canopy.engine.logging import audit, log_hook_failed
from canopy.engine.task import Actor, HookContext, HookHandler, Task

logger = logging.getLogger("canopy.engine.hooks")

PRE = "pre"
POST = "post"


class HookManager:
    """Explicit hook registry owned by one ``TaskRunner``."""

    def __init__(self):
        self._listeners: Dict[Tuple[str, str], List[HookHandler]] = {}
        self._fanouts: Dict[Tuple[str, str], HookHandler] = {}
        self._lock = threading.Lock()

    # -- registration -------------------------------------------------------

    def _add(self, name: str, moment: str, handler: HookHandler) -> None:
        with self._lock:
            self._listeners.setdefault((name, moment), []).append(handler)

    def set_pre_hook_handler(self, name: str, handler: HookHandler) -> None:
        self._add(name, PRE, handler)

    def set_post_hook_handler(self, name: str, handler: HookHandler) -> None:
        self._add(name, POST, handler)

    def unset_pre_hook_handler(self, name: str, handler: HookHandler) -> None:
        self._remove(name, PRE, handler)

    def unset_post_hook_handler(self, name: str, handler: HookHandler) -> None:
        self._remove(name, POST, handler)

    def _remove(self, name: str, moment: str, handler: HookHandler) -> None:
        with self._lock:
            listeners = self._listeners.get((name, moment))
            if listeners and handler in listeners:
                listeners.remove(handler)

    def handlers(self, name: str, moment: str) -> List[HookHandler]:
        with self._lock:
            return list(self._listeners.get((name, moment), []))

    # -- injection ----------------------------------------------------------

    def fanout(self, name: str, moment: str) -> HookHandler:
        """The single callable invoking every listener of (name, moment) in order."""
        key = (name, moment)
        with self._lock:
            fanout = self._fanouts.get(key)
            if fanout is None:
                listeners = self._listeners.setdefault(key, [])
                fanout = self._build_fanout(name, moment, listeners)
                self._fanouts[key] = fanout
        return fanout

    def inject(self, task: Task) -> Task:
        """Attach the fan-outs for the task's name, if anything listens on it."""
        with self._lock:
            has_pre = (task.name, PRE) in self._listeners
            has_post = (task.name, POST) in self._listeners
        # fanout() takes the lock itself
        if has_pre:
            task.pre_hook_handler = self.fanout(task.name, PRE)
        if has_post:
            task.post_hook_handler = self.fanout(task.name, POST)
        return task

    @staticmethod
    def _build_fanout(name: str, moment: str, listeners: List[HookHandler]) -> HookHandler:
        def fanout(payload, actor: Actor, hook_context: HookContext) -> None:
            for listener in list(listeners):
                try:
                    listener(payload, actor, hook_context)
                except Exception as e:
                    logger.exception(f"{name}: {moment}-hook failed for actor '{actor.id}'")
                    audit(log_hook_failed(name, actor.id, moment, str(e)))
                    raise

        fanout.__name__ = f"{name}_{moment}_hook_fanout"
        return fanout
