from __future__ import annotations

import hashlib
import importlib.util
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence


EXTENSION_API_VERSION = 1

EVENTS = ("line_start", "before_command", "after_command", "output", "on_error")


class JossExtensionError(Exception):
    pass


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = EXTENSION_API_VERSION


@dataclass(frozen=True)
class StepContext:
    step_index: int
    rule: str
    location: Any  # SourceLocation | None
    extra: Optional[Dict[str, Any]]


@dataclass(frozen=True)
class EventHandler:
    priority: int
    handler: Callable[..., None]
    ext_name: str


@dataclass(frozen=True)
class StepRule:
    name: str
    every_n: int
    handler: Callable[[Any, StepContext], None]
    ext_name: str


@dataclass(frozen=True)
class FunctionEntry:
    name: str
    min_args: int
    max_args: Optional[int]
    impl: Callable[..., Any]
    doc: str = ""


@dataclass
class HookRegistry:
    events: Dict[str, List[EventHandler]] = field(default_factory=dict)
    step_rules: List[StepRule] = field(default_factory=list)

    def on_event(self, event: str, handler: Callable[..., None], *, priority: int, ext_name: str) -> None:
        if event not in EVENTS:
            raise JossExtensionError(f"Unknown event '{event}' (expected one of {', '.join(EVENTS)})")
        handlers = self.events.setdefault(event, [])
        handlers.append(EventHandler(priority=priority, handler=handler, ext_name=ext_name))
        # Stable: equal priorities keep registration order.
        handlers.sort(key=lambda h: -h.priority)

    def emit(self, event: str, *args: Any, **kwargs: Any) -> None:
        for entry in self.events.get(event, ()):
            entry.handler(*args, **kwargs)

    def add_step_rule(self, rule: StepRule) -> None:
        if rule.every_n < 1:
            raise JossExtensionError(f"every_n_steps for '{rule.name}' must be >= 1")
        self.step_rules.append(rule)

    def after_step(self, interpreter: Any, ctx: StepContext) -> None:
        for rule in self.step_rules:
            if ctx.step_index % rule.every_n == 0:
                rule.handler(interpreter, ctx)


@dataclass
class RuntimeServices:
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)
    # Joined into the interpreter's builtin table at construction.
    functions: List[FunctionEntry] = field(default_factory=list)


class ExtensionAPI:
    """Handle passed to an extension's ``joss_register(ext)``.

    Handlers and functions may be registered directly or with the
    decorator forms::

        @ext.function("twice", 1, 1)
        def twice(interpreter, args, location): ...

        @ext.on_event("output")
        def echo(interpreter, text): ...
    """

    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self._ext_name = ext_name

    @property
    def name(self) -> str:
        return self._ext_name

    def metadata(self, *, name: str, version: str = "0.0.0", requires_api: int = EXTENSION_API_VERSION) -> None:
        self._services.metadata.append(ExtensionMetadata(name=name, version=version, requires_api=requires_api))

    def register_function(
        self,
        name: str,
        min_args: int,
        max_args: Optional[int],
        impl: Callable[..., Any],
        *,
        doc: str = "",
    ) -> None:
        if not name or not name.isidentifier():
            raise JossExtensionError(f"Invalid function name '{name}'")
        if any(entry.name == name for entry in self._services.functions):
            raise JossExtensionError(f"Function '{name}' is already registered")
        self._services.functions.append(
            FunctionEntry(name=name, min_args=int(min_args), max_args=None if max_args is None else int(max_args), impl=impl, doc=doc)
        )

    def function(self, name: str, min_args: int, max_args: Optional[int] = None, *, doc: str = ""):
        def deco(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.register_function(name, min_args, max_args, fn, doc=doc)
            return fn

        return deco

    def on_event(self, event: str, handler: Optional[Callable[..., None]] = None, *, priority: int = 0):
        def attach(fn: Callable[..., None]) -> Callable[..., None]:
            self._services.hook_registry.on_event(event, fn, priority=priority, ext_name=self._ext_name)
            return fn

        return attach if handler is None else attach(handler)

    def every_n_steps(self, every_n: int, handler: Optional[Callable[[Any, StepContext], None]] = None, *, name: str = ""):
        def attach(fn: Callable[[Any, StepContext], None]) -> Callable[[Any, StepContext], None]:
            rule = StepRule(name=name or fn.__name__, every_n=every_n, handler=fn, ext_name=self._ext_name)
            self._services.hook_registry.add_step_rule(rule)
            return fn

        return attach if handler is None else attach(handler)


def _module_name_for(path: str) -> str:
    stem = os.path.splitext(os.path.basename(path))[0]
    digest = hashlib.sha256(path.encode("utf-8")).hexdigest()[:12]
    return "joss_ext_" + "".join(ch if ch.isalnum() else "_" for ch in stem) + "_" + digest


def load_extension_module(path: str) -> Any:
    path = os.path.abspath(path)
    if not os.path.isfile(path):
        raise JossExtensionError(f"Extension not found: {path}")
    spec = importlib.util.spec_from_file_location(_module_name_for(path), path)
    if spec is None or spec.loader is None:
        raise JossExtensionError(f"Cannot import extension: {path}")
    module = importlib.util.module_from_spec(spec)
    # The extension's own directory is importable while it loads.
    ext_dir = os.path.dirname(path)
    sys.path.insert(0, ext_dir)
    try:
        spec.loader.exec_module(module)
    finally:
        if ext_dir in sys.path:
            sys.path.remove(ext_dir)
    return module


def build_default_services() -> RuntimeServices:
    return RuntimeServices()


def register_module(services: RuntimeServices, module: Any, *, default_name: str) -> None:
    wanted = getattr(module, "JOSS_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
    if wanted != EXTENSION_API_VERSION:
        raise JossExtensionError(f"Extension {default_name} needs API {wanted}; this interpreter provides {EXTENSION_API_VERSION}")
    register = getattr(module, "joss_register", None)
    if not callable(register):
        raise JossExtensionError(f"Extension {default_name} has no callable joss_register(ext)")
    ext_name = str(getattr(module, "JOSS_EXTENSION_NAME", default_name))
    register(ExtensionAPI(services=services, ext_name=ext_name))


def load_runtime_services(paths: Sequence[str]) -> RuntimeServices:
    services = build_default_services()
    for path in paths:
        module = load_extension_module(path)
        register_module(services, module, default_name=os.path.splitext(os.path.basename(path))[0])
    return services
