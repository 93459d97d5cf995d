"""
Host-side collaborators consumed by the harness.

The monitored application is never imported directly. It is reached
through three narrow capabilities:

- A tree of UI-like nodes that publishes mutation records to subscribers
- Named, optionally-absent capability objects (processing engine, change
  tracker, document store, ...) exposing status queries
- Wrap-and-call-through hooks on named methods of those objects

NodeTree is an in-memory implementation of the mutation capability used
by embedding hosts and by the test-suite.
"""

import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Set, Tuple

logger = logging.getLogger(__name__)

_node_ids = itertools.count(1)


# =============================================================================
# Node tree and mutations
# =============================================================================

@dataclass(eq=False)
class UINode:
    """A node in the host's UI tree."""

    tag: str
    classes: Set[str] = field(default_factory=set)
    attributes: Dict[str, str] = field(default_factory=dict)
    text: str = ""
    children: List["UINode"] = field(default_factory=list)
    parent: Optional["UINode"] = None
    node_id: int = field(default_factory=lambda: next(_node_ids))

    def has_class(self, name: str) -> bool:
        return name in self.classes

    def get_attribute(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.attributes.get(name, default)

    def iter_descendants(self) -> Iterator["UINode"]:
        for child in self.children:
            yield child
            yield from child.iter_descendants()

    def iter_self_and_descendants(self) -> Iterator["UINode"]:
        yield self
        yield from self.iter_descendants()

    def text_content(self) -> str:
        parts = [self.text] + [child.text_content() for child in self.children]
        return "".join(p for p in parts if p)

    def closest(self, class_name: str) -> Optional["UINode"]:
        node: Optional[UINode] = self
        while node is not None:
            if node.has_class(class_name):
                return node
            node = node.parent
        return None

    def query_all(self, class_name: str) -> List["UINode"]:
        return [n for n in self.iter_descendants() if n.has_class(class_name)]


class MutationKind(str, Enum):
    CHILD_LIST = "childList"
    ATTRIBUTES = "attributes"
    CHARACTER_DATA = "characterData"


@dataclass(frozen=True)
class Mutation:
    """One change notification from the node tree."""

    kind: MutationKind
    target: UINode
    added: Tuple[UINode, ...] = ()
    removed: Tuple[UINode, ...] = ()
    attribute_name: Optional[str] = None

    def touched_nodes(self) -> List[UINode]:
        return [self.target, *self.added, *self.removed]

    def added_text(self) -> str:
        """Text introduced by this mutation (added subtrees or new text)."""
        if self.kind == MutationKind.CHARACTER_DATA:
            return self.target.text
        return " ".join(n.text_content() for n in self.added)


MutationCallback = Callable[[List[Mutation]], None]


class MutationSource(Protocol):
    """Subscribe/publish interface over the host's node tree."""

    def subscribe(self, callback: MutationCallback) -> None:
        ...

    def unsubscribe(self, callback: MutationCallback) -> None:
        ...


class NodeTree:
    """
    In-memory node tree publishing mutation records.

    Every structural, attribute or text change is delivered to subscribers
    synchronously as a one-element batch.
    """

    def __init__(self, root: Optional[UINode] = None):
        self.root = root or UINode("body")
        self._subscribers: List[MutationCallback] = []

    def subscribe(self, callback: MutationCallback) -> None:
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: MutationCallback) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _publish(self, mutation: Mutation) -> None:
        for callback in list(self._subscribers):
            callback([mutation])

    def create(self, tag: str, classes: Optional[List[str]] = None, text: str = "", **attributes: str) -> UINode:
        """Build a detached node; attribute names use underscores for dashes."""
        attrs = {k.replace("_", "-"): str(v) for k, v in attributes.items()}
        return UINode(tag=tag, classes=set(classes or []), attributes=attrs, text=text)

    def append_child(self, parent: UINode, child: UINode) -> UINode:
        child.parent = parent
        parent.children.append(child)
        self._publish(Mutation(MutationKind.CHILD_LIST, parent, added=(child,)))
        return child

    def remove_child(self, parent: UINode, child: UINode) -> None:
        parent.children.remove(child)
        child.parent = None
        self._publish(Mutation(MutationKind.CHILD_LIST, parent, removed=(child,)))

    def set_attribute(self, node: UINode, name: str, value: str) -> None:
        node.attributes[name] = value
        self._publish(Mutation(MutationKind.ATTRIBUTES, node, attribute_name=name))

    def add_class(self, node: UINode, name: str) -> None:
        node.classes.add(name)
        self._publish(Mutation(MutationKind.ATTRIBUTES, node, attribute_name="class"))

    def set_text(self, node: UINode, text: str) -> None:
        node.text = text
        self._publish(Mutation(MutationKind.CHARACTER_DATA, node))

    def query_all(self, class_name: str) -> List[UINode]:
        return self.root.query_all(class_name)

    def query_one(self, class_name: str) -> Optional[UINode]:
        matches = self.query_all(class_name)
        return matches[0] if matches else None


# =============================================================================
# Capabilities and method hooks
# =============================================================================

@dataclass
class HookedCall:
    """Record of one call made through a wrapped capability method."""

    capability: str
    method: str
    args: Tuple[Any, ...]
    kwargs: Dict[str, Any]
    started_at: float
    duration: float = 0.0
    result: Any = None
    error: Optional[BaseException] = None


CallObserver = Callable[[HookedCall], None]


class _MethodHook:
    """One installed wrapper fanning out to any number of observers."""

    def __init__(self, capability: str, target: Any, method_name: str):
        self.capability = capability
        self.target = target
        self.method_name = method_name
        self.observers: List[CallObserver] = []
        self.had_instance_attr = method_name in getattr(target, "__dict__", {})
        self.original = getattr(target, method_name)
        self.wrapper = self._build_wrapper()
        setattr(target, method_name, self.wrapper)

    def _build_wrapper(self) -> Callable[..., Any]:
        original = self.original

        def wrapper(*args, **kwargs):
            call = HookedCall(
                capability=self.capability,
                method=self.method_name,
                args=args,
                kwargs=kwargs,
                started_at=time.time(),
            )
            try:
                call.result = original(*args, **kwargs)
                return call.result
            except Exception as e:
                call.error = e
                raise
            finally:
                call.duration = time.time() - call.started_at
                self._notify(call)

        wrapper.__wrapped__ = original
        wrapper.__name__ = getattr(original, "__name__", self.method_name)
        return wrapper

    def _notify(self, call: HookedCall) -> None:
        for observer in list(self.observers):
            try:
                observer(call)
            except Exception as e:
                logger.warning(
                    f"[VIGIL:HOST] Observer on {self.capability}.{self.method_name} failed: {e}"
                )

    def restore(self) -> None:
        if self.had_instance_attr:
            setattr(self.target, self.method_name, self.original)
        else:
            delattr(self.target, self.method_name)


class CapabilityRegistry:
    """
    Named, optionally-absent host capability objects.

    Monitors query capabilities by name and tolerate their absence. Hooks
    are reference counted per (capability, method): the wrapper is
    installed by the first attach and removed by the last detach, so
    monitors can detach in any order.
    """

    def __init__(self, **capabilities: Any):
        self._capabilities: Dict[str, Any] = dict(capabilities)
        self._hooks: Dict[Tuple[str, str], _MethodHook] = {}

    def register(self, name: str, capability: Any) -> None:
        self._capabilities[name] = capability

    def unregister(self, name: str) -> None:
        self._capabilities.pop(name, None)

    def get(self, name: str) -> Optional[Any]:
        return self._capabilities.get(name)

    def has(self, name: str) -> bool:
        return self._capabilities.get(name) is not None

    def names(self) -> List[str]:
        return sorted(self._capabilities)

    def attach(self, name: str, method_name: str, observer: CallObserver) -> Optional[Callable[[], None]]:
        """
        Observe calls to capability.method_name.

        Returns:
            Detach callable, or None when the capability or method is absent
        """
        target = self.get(name)
        if target is None or not callable(getattr(target, method_name, None)):
            return None

        key = (name, method_name)
        hook = self._hooks.get(key)
        if hook is None or hook.target is not target:
            hook = _MethodHook(name, target, method_name)
            self._hooks[key] = hook
        hook.observers.append(observer)

        def detach() -> None:
            if observer in hook.observers:
                hook.observers.remove(observer)
            if not hook.observers and self._hooks.get(key) is hook:
                del self._hooks[key]
                try:
                    hook.restore()
                except Exception as e:
                    logger.warning(f"[VIGIL:HOST] Failed to restore {name}.{method_name}: {e}")

        return detach

    def hooked_methods(self) -> List[Tuple[str, str]]:
        return sorted(self._hooks)
