"""
Typed notification fan-out for store and event-router notifications.
"""
import asyncio
import inspect
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Union

from loguru import logger


class Event(str, Enum):
    """Notification names emitted to listeners, with their payloads."""

    ADD_TEAM = "addTeam"  # (team)
    CHANGE_TEAM = "changeTeam"  # (old, new)
    ADD_USER = "addUser"  # (user)
    CHANGE_USER = "changeUser"  # (old, new)
    ADD_CHANNEL = "addChannel"  # (channel)
    CHANGE_CHANNEL = "changeChannel"  # (old, new)
    ADD_BOT = "addBot"  # (bot)
    CHANGE_BOT = "changeBot"  # (old, new)
    MESSAGE = "message"  # (message)
    MESSAGE_CHANGED = "messageChanged"  # (old, new)
    MESSAGE_DELETED = "messageDeleted"  # (message)
    REACTION_ADDED = "reactionAdded"  # (reaction)
    REACTION_REMOVED = "reactionRemoved"  # (reaction)
    MEMBER_JOINED_CHANNEL = "memberJoinedChannel"  # (user, channel)
    MEMBER_LEFT_CHANNEL = "memberLeftChannel"  # (user, channel)
    TYPING = "typing"  # (channel, user)
    PRESENCE_CHANGE = "presenceChange"  # (user, presence)
    CONNECTED = "connected"  # ()
    DISCONNECTED = "disconnected"  # ()


Listener = Callable[..., Any]
EventName = Union[Event, str]


class EventEmitter:
    """
    Registry of listeners per notification name.

    Listeners run synchronously in registration order. A listener returning an
    awaitable has it scheduled on the running loop. A failing listener is logged
    and does not stop the others.
    """

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._pending: Set[asyncio.Future] = set()

    @staticmethod
    def _name(event: EventName) -> str:
        return Event(event).value

    def on(self, event: EventName, listener: Optional[Listener] = None):
        """
        Register a listener. Usable directly or as a decorator.

        Raises:
            ValueError: If the event name is unknown
        """
        name = self._name(event)

        def register(func: Listener) -> Listener:
            self._listeners[name].append(func)
            return func

        if listener is None:
            return register
        return register(listener)

    def off(self, event: EventName, listener: Listener) -> None:
        """Remove a listener; unknown listeners are ignored."""
        listeners = self._listeners.get(self._name(event), [])
        if listener in listeners:
            listeners.remove(listener)

    def listeners(self, event: EventName) -> List[Listener]:
        return list(self._listeners.get(self._name(event), []))

    def emit(self, event: EventName, *args: Any) -> int:
        """
        Call every listener for ``event`` with ``args``.

        Returns:
            Number of listeners called
        """
        name = self._name(event)
        listeners = list(self._listeners.get(name, []))
        for listener in listeners:
            try:
                result = listener(*args)
            except Exception:
                logger.exception(f"Listener for {name} failed")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._finished)
        return len(listeners)

    def _finished(self, task: asyncio.Future) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.opt(exception=task.exception()).error("Async listener failed")
