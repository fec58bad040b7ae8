"""Extension hooks for the ematrm interpreter.

An extension is a Python file defining ``ematrm_register(ext)``. It receives
an ``ExtensionAPI`` bound to one ``RuntimeServices`` and can subscribe to
machine events or attach step rules. Step rules run after an instruction has
executed and see a ``StepContext`` holding the token, its position and the
live machine.

Hook signatures, by event:

    program_start       handler(interpreter, code: List[Token])
    before_instruction  handler(interpreter, ctx: StepContext)
    after_instruction   handler(interpreter, ctx: StepContext)
    program_end         handler(interpreter, status: int)
    on_error            handler(interpreter, error: Exception)
"""

from __future__ import annotations

import hashlib
import importlib.util
import os
import sys
from dataclasses import dataclass, field
from types import ModuleType
from typing import TYPE_CHECKING, Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence

from lexer import INSTRUCTION_KINDS, Token

if TYPE_CHECKING:
    from interpreter import Interpreter, Machine


EXTENSION_API_VERSION = 1

EVENTS = ("program_start", "before_instruction", "after_instruction", "program_end", "on_error")


class EmatrmExtensionError(Exception):
    pass


def check_api_version(requires_api: int, who: str) -> None:
    if requires_api != EXTENSION_API_VERSION:
        raise EmatrmExtensionError(f"{who} requires API {requires_api}, host supports {EXTENSION_API_VERSION}")


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = EXTENSION_API_VERSION


@dataclass(frozen=True)
class StepContext:
    step_index: int
    instr_ptr: int
    token: Token
    machine: "Machine"

    @property
    def kind(self) -> str:
        return self.token.type

    @property
    def line(self) -> int:
        return self.token.line


EventHandler = Callable[["Interpreter", Any], None]
StepHandler = Callable[["Interpreter", StepContext], None]


@dataclass(frozen=True)
class Hook:
    handler: EventHandler
    ext_name: str
    priority: int = 0


@dataclass(frozen=True)
class StepRule:
    name: str
    handler: StepHandler
    ext_name: str
    every_n: int = 1
    # Empty means every instruction kind.
    kinds: FrozenSet[str] = frozenset()

    def matches(self, ctx: StepContext) -> bool:
        if self.kinds and ctx.kind not in self.kinds:
            return False
        return ctx.step_index % self.every_n == 0


@dataclass
class HookRegistry:
    hooks: Dict[str, List[Hook]] = field(default_factory=lambda: {event: [] for event in EVENTS})
    step_rules: List[StepRule] = field(default_factory=list)

    def add_hook(self, event: str, hook: Hook) -> None:
        if event not in self.hooks:
            raise EmatrmExtensionError(f"Unknown event '{event}' (known: {', '.join(EVENTS)})")
        bucket = self.hooks[event]
        bucket.append(hook)
        # Stable sort: equal priorities run in registration order.
        bucket.sort(key=lambda h: -h.priority)

    def add_step_rule(self, rule: StepRule) -> None:
        if rule.every_n < 1:
            raise EmatrmExtensionError(f"Step rule '{rule.name}': every_n must be >= 1, got {rule.every_n}")
        unknown = sorted(rule.kinds - INSTRUCTION_KINDS)
        if unknown:
            raise EmatrmExtensionError(f"Step rule '{rule.name}': unknown instruction kind(s) {', '.join(unknown)}")
        self.step_rules.append(rule)

    def emit(self, event: str, interpreter: "Interpreter", payload: Any) -> None:
        for hook in self.hooks[event]:
            hook.handler(interpreter, payload)

    def after_step(self, interpreter: "Interpreter", ctx: StepContext) -> None:
        for rule in self.step_rules:
            if rule.matches(ctx):
                rule.handler(interpreter, ctx)


@dataclass
class RuntimeServices:
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)

    def describe(self) -> List[Dict[str, Any]]:
        return [{"name": meta.name, "version": meta.version} for meta in self.metadata]


class ExtensionAPI:
    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self._ext_name = ext_name
        self.described = False

    @property
    def name(self) -> str:
        return self._ext_name

    def metadata(self, *, name: str, version: str = "0.0.0", requires_api: int = EXTENSION_API_VERSION) -> None:
        check_api_version(requires_api, f"Extension '{name}'")
        self._services.metadata.append(ExtensionMetadata(name=name, version=version, requires_api=requires_api))
        self.described = True

    def on_event(self, event: str, handler: Optional[EventHandler] = None, *, priority: int = 0):
        def attach(fn: EventHandler) -> EventHandler:
            self._services.hook_registry.add_hook(event, Hook(handler=fn, ext_name=self._ext_name, priority=priority))
            return fn

        return attach if handler is None else attach(handler)

    def every_n_steps(self, every_n: int, handler: Optional[StepHandler] = None, *, name: str = ""):
        """Run ``handler`` after steps 0, N, 2N, ... of the run."""
        return self._step_rule(handler, name=name, every_n=every_n, kinds=frozenset())

    def on_instruction(self, *kinds: str, handler: Optional[StepHandler] = None, name: str = ""):
        """Run ``handler`` after every executed instruction of one of ``kinds``."""
        if not kinds:
            raise EmatrmExtensionError("on_instruction needs at least one instruction kind")
        return self._step_rule(handler, name=name, every_n=1, kinds=frozenset(kinds))

    def _step_rule(self, handler: Optional[StepHandler], *, name: str, every_n: int, kinds: FrozenSet[str]):
        def attach(fn: StepHandler) -> StepHandler:
            rule = StepRule(
                name=name or fn.__name__,
                handler=fn,
                ext_name=self._ext_name,
                every_n=every_n,
                kinds=kinds,
            )
            self._services.hook_registry.add_step_rule(rule)
            return fn

        return attach if handler is None else attach(handler)


def _import_extension(path: str) -> ModuleType:
    if not os.path.isfile(path):
        raise EmatrmExtensionError(f"Extension not found: {path}")
    stem = os.path.splitext(os.path.basename(path))[0]
    digest = hashlib.sha256(path.encode("utf-8")).hexdigest()[:12]
    spec = importlib.util.spec_from_file_location(f"ematrm_ext_{stem}_{digest}", path)
    if spec is None or spec.loader is None:
        raise EmatrmExtensionError(f"Cannot import extension {path}")
    module = importlib.util.module_from_spec(spec)
    # Sibling imports resolve against the extension's own directory.
    ext_dir = os.path.dirname(path)
    sys.path.insert(0, ext_dir)
    try:
        spec.loader.exec_module(module)
    except EmatrmExtensionError:
        raise
    except Exception as exc:
        raise EmatrmExtensionError(f"Extension {path} failed to import: {exc}") from exc
    finally:
        if ext_dir in sys.path:
            sys.path.remove(ext_dir)
    return module


def read_emx(pointer_file: str) -> List[str]:
    """Paths listed in a ``.emx`` file, one per line, relative to the file."""
    if not os.path.isfile(pointer_file):
        raise EmatrmExtensionError(f".emx file not found: {pointer_file}")
    base_dir = os.path.dirname(os.path.abspath(pointer_file))
    with open(pointer_file, "r", encoding="utf-8") as handle:
        entries = [raw.partition("#")[0].strip() for raw in handle]
    return [os.path.join(base_dir, entry) for entry in entries if entry]


def gather_extension_paths(paths: Iterable[str]) -> List[str]:
    """Expand ``.emx`` files and drop repeats, keeping first-seen order."""
    resolved: List[str] = []
    for path in paths:
        listed = read_emx(path) if path.lower().endswith(".emx") else [path]
        for entry in listed:
            entry = os.path.abspath(entry)
            if entry not in resolved:
                resolved.append(entry)
    return resolved


def build_default_services() -> RuntimeServices:
    return RuntimeServices()


def load_runtime_services(paths: Sequence[str]) -> RuntimeServices:
    services = build_default_services()
    for path in gather_extension_paths(paths):
        module = _import_extension(path)
        check_api_version(getattr(module, "EMATRM_EXTENSION_API_VERSION", EXTENSION_API_VERSION), f"Extension {path}")
        register = getattr(module, "ematrm_register", None)
        if not callable(register):
            raise EmatrmExtensionError(f"Extension {path} must define callable ematrm_register(ext)")
        ext_name = getattr(module, "EMATRM_EXTENSION_NAME", os.path.splitext(os.path.basename(path))[0])
        ext = ExtensionAPI(services=services, ext_name=str(ext_name))
        register(ext)
        if not ext.described:
            services.metadata.append(ExtensionMetadata(name=ext.name))
    return services
