"""Template routing.

Maps message text to handlers using whitespace-separated templates:

    "page_to :page"     ":name" binds exactly one word
    "search *terms"     "*name" binds the rest of the line (may be empty)
    "help"              anything else must match literally, case-insensitively

The fiber plugin only needs the ``PatternRouter`` surface
(register/unregister/has); ``TemplateRouter`` is the implementation the
dispatcher uses.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .message import Message

logger = logging.getLogger(__name__)

Handler = Callable[["Message", dict[str, str]], Awaitable[Any] | Any]

_LITERAL = "literal"
_PARAM = "param"
_REST = "rest"


@dataclass(frozen=True)
class Template:
    """A parsed message template."""

    pattern: str
    tokens: tuple[tuple[str, str], ...]
    defaults: tuple[tuple[str, str], ...] = ()

    @classmethod
    def parse(cls, pattern: str, defaults: dict[str, str] | None = None) -> Template:
        words = pattern.split()
        if not words:
            raise ValueError("Template must not be empty")

        tokens: list[tuple[str, str]] = []
        for index, word in enumerate(words):
            if word.startswith(":") and len(word) > 1:
                tokens.append((_PARAM, word[1:]))
            elif word.startswith("*") and len(word) > 1:
                if index != len(words) - 1:
                    raise ValueError(f"'{word}' must be the last token in {pattern!r}")
                tokens.append((_REST, word[1:]))
            else:
                tokens.append((_LITERAL, word.lower()))

        names = [value for kind, value in tokens if kind != _LITERAL]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate parameter name in {pattern!r}")

        return cls(
            pattern=pattern,
            tokens=tuple(tokens),
            defaults=tuple(sorted((defaults or {}).items())),
        )

    @property
    def parameter_names(self) -> list[str]:
        return [value for kind, value in self.tokens if kind != _LITERAL]

    def match(self, text: str) -> dict[str, str] | None:
        """Return extracted parameters, or None if ``text`` does not match."""
        words = text.split()
        defaults = dict(self.defaults)
        params: dict[str, str] = {}
        position = 0

        for kind, value in self.tokens:
            if kind == _REST:
                params[value] = " ".join(words[position:])
                position = len(words)
                break
            if position >= len(words):
                # Only trailing parameters with a default may be omitted
                if kind == _PARAM and value in defaults:
                    params[value] = defaults[value]
                    continue
                return None
            word = words[position]
            if kind == _LITERAL and word.lower() != value:
                return None
            if kind == _PARAM:
                params[value] = word
            position += 1

        if position != len(words):
            return None
        return params


@dataclass
class MappingOptions:
    """How the dispatcher invokes a mapped handler.

    fiber: run the handler inside a new fiber so it may call wait_for()
    threaded: run a synchronous handler in a worker thread
    """

    fiber: bool = False
    threaded: bool = False
    defaults: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.fiber and self.threaded:
            raise ValueError("A mapping cannot be both fiber-backed and threaded")


@dataclass
class Mapping:
    """A registered template and the handler it routes to."""

    template: Template
    handler: Handler
    options: MappingOptions

    @property
    def pattern(self) -> str:
        return self.template.pattern


@dataclass
class RouteMatch:
    mapping: Mapping
    params: dict[str, str]


@runtime_checkable
class PatternRouter(Protocol):
    """Routing surface the fiber plugin binds its resume callback through."""

    def register_pattern(self, pattern: str, handler: Handler, options: MappingOptions) -> None:
        """Install a routing rule for ``pattern``."""
        ...

    def unregister_pattern(self, pattern: str) -> bool:
        """Remove the rule for ``pattern``; False if there was none."""
        ...

    def has_pattern(self, pattern: str) -> bool:
        """Whether a rule for ``pattern`` is installed."""
        ...


class TemplateRouter:
    """Ordered set of template mappings. First registered match wins."""

    def __init__(self) -> None:
        self._mappings: dict[str, Mapping] = {}

    def map(
        self,
        pattern: str,
        handler: Handler,
        *,
        fiber: bool = False,
        threaded: bool = False,
        defaults: dict[str, str] | None = None,
    ) -> Mapping:
        """Map ``pattern`` to ``handler``.

        Usage:
            router.map("list *topic", pager.list_items, fiber=True)
        """
        options = MappingOptions(fiber=fiber, threaded=threaded, defaults=dict(defaults or {}))
        self.register_pattern(pattern, handler, options)
        return self._mappings[pattern]

    def register_pattern(self, pattern: str, handler: Handler, options: MappingOptions) -> None:
        """Install a routing rule.

        Raises:
            ValueError: If the pattern is already registered or malformed
        """
        if pattern in self._mappings:
            raise ValueError(f"Pattern already registered: {pattern!r}")
        template = Template.parse(pattern, options.defaults)
        self._mappings[pattern] = Mapping(template=template, handler=handler, options=options)
        logger.debug(
            f"Registered pattern {pattern!r} (fiber={options.fiber}, threaded={options.threaded})"
        )

    def unregister_pattern(self, pattern: str) -> bool:
        mapping = self._mappings.pop(pattern, None)
        if mapping is None:
            return False
        logger.debug(f"Unregistered pattern {pattern!r}")
        return True

    def has_pattern(self, pattern: str) -> bool:
        return pattern in self._mappings

    def get(self, pattern: str) -> Mapping | None:
        return self._mappings.get(pattern)

    @property
    def patterns(self) -> list[str]:
        return list(self._mappings)

    def match(self, text: str) -> RouteMatch | None:
        """Find the first mapping whose template matches ``text``."""
        for mapping in list(self._mappings.values()):
            params = mapping.template.match(text)
            if params is not None:
                return RouteMatch(mapping=mapping, params=params)
        return None

    def route(self, message: Message) -> RouteMatch | None:
        """Match a message and record the matched pattern on it."""
        found = self.match(message.text)
        if found is None:
            return None
        message.template = found.mapping.pattern
        message.params = dict(found.params)
        return found
