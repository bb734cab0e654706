# shran/resolver.py
"""
resolver.py - dependency resolution for shran build plans

Features:
- DependencyGraph built from library overrides + the node's fixed default-library edges
- Nodes stored in an ordered list, edges as (dependency, dependent) index pairs
- Depth-first topological sort, tie-break by declaration order
- Cycle detection reporting every participant of the cycle found
- Unknown dependency detection
- Graphviz DOT export
- No I/O and no processes: the output is an immutable ordered tuple of Target records
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from shran.errors import CycleDetectedError, UnknownDependencyError
from shran.logging import get_logger
from shran.specloader import BuildSpec, LibraryOverride

logger = get_logger("resolver")

# -----------------------
# Default library edges of the node's depends/ tree (library -> requirements)
# -----------------------
DEFAULT_LIBRARIES: Dict[str, Tuple[str, ...]] = {
    "boost": (),
    "libevent": (),
    "sqlite": (),
    "bdb": (),
    "zeromq": (),
    "miniupnpc": (),
    "libnatpmp": (),
    "qrencode": (),
    "systemtap": (),
    "capnp": (),
    "expat": (),
    "freetype": (),
    "zlib": (),
    "xproto": (),
    "xcb_proto": (),
    "libXau": ("xproto",),
    "libxcb": ("libXau", "xcb_proto"),
    "libxkbcommon": ("libxcb",),
    "xcb_util": ("libxcb",),
    "xcb_util_image": ("xcb_util",),
    "xcb_util_keysyms": ("libxcb",),
    "xcb_util_render": ("libxcb",),
    "xcb_util_wm": ("libxcb",),
    "fontconfig": ("freetype", "expat"),
    "qt": ("freetype", "fontconfig", "libxcb", "libxkbcommon", "zlib"),
}

KIND_LIBRARY = "library"
KIND_NODE = "node"

# -----------------------
# Data types
# -----------------------
@dataclass(frozen=True)
class Target:
    name: str
    kind: str
    dependencies: Tuple[str, ...] = ()
    library: Optional[LibraryOverride] = None

    @property
    def is_library(self) -> bool:
        return self.kind == KIND_LIBRARY


OrderedTargets = Tuple[Target, ...]

_WHITE, _GRAY, _BLACK = 0, 1, 2


class DependencyGraph:
    """Arena graph: nodes in declaration order, edges as (dependency, dependent) index pairs."""

    def __init__(self) -> None:
        self.nodes: List[str] = []
        self.kinds: List[str] = []
        self.libraries: List[Optional[LibraryOverride]] = []
        self.edges: List[Tuple[int, int]] = []
        self._index: Dict[str, int] = {}

    # -----------------------
    # Construction
    # -----------------------
    def add_node(self, name: str, kind: str, library: Optional[LibraryOverride] = None) -> int:
        idx = len(self.nodes)
        self.nodes.append(name)
        self.kinds.append(kind)
        self.libraries.append(library)
        self._index[name] = idx
        return idx

    def add_edge(self, dependency: int, dependent: int) -> None:
        edge = (dependency, dependent)
        if edge not in self.edges:
            self.edges.append(edge)

    def index_of(self, name: str) -> Optional[int]:
        return self._index.get(name)

    @classmethod
    def from_spec(cls, spec: BuildSpec) -> "DependencyGraph":
        graph = cls()
        for lib in spec.libraries:
            graph.add_node(lib.name, KIND_LIBRARY, lib)
        target_idx = graph.add_node(spec.target, KIND_NODE)

        known_defaults = set(DEFAULT_LIBRARIES)
        for reqs in DEFAULT_LIBRARIES.values():
            known_defaults.update(reqs)

        for lib in spec.libraries:
            lib_idx = graph.index_of(lib.name)
            # declared requirements
            for dep in lib.requires:
                dep_idx = graph.index_of(dep)
                if dep_idx is not None:
                    graph.add_edge(dep_idx, lib_idx)
                elif dep not in known_defaults:
                    raise UnknownDependencyError(dep, required_by=lib.name)
                else:
                    logger.debug("%s requires %s, provided by the native build", lib.name, dep)
            # inferred default edges, only between overridden libraries
            for dep in DEFAULT_LIBRARIES.get(lib.name, ()):
                dep_idx = graph.index_of(dep)
                if dep_idx is not None and graph.kinds[dep_idx] == KIND_LIBRARY:
                    graph.add_edge(dep_idx, lib_idx)

        # the node links against every injected library
        for lib in spec.libraries:
            graph.add_edge(graph.index_of(lib.name), target_idx)
        return graph

    # -----------------------
    # Queries
    # -----------------------
    def dependencies_of(self, idx: int) -> List[int]:
        return [a for (a, b) in self.edges if b == idx]

    def dependents_of(self, name: str) -> List[str]:
        idx = self.index_of(name)
        if idx is None:
            return []
        return [self.nodes[b] for (a, b) in self.edges if a == idx]

    def topological_order(self) -> List[int]:
        """
        DFS post-order: each node is emitted after all of its dependencies.
        Roots and dependencies are visited in declaration order.
        """
        state = [_WHITE] * len(self.nodes)
        stack: List[int] = []
        result: List[int] = []

        def dfs(n: int) -> None:
            state[n] = _GRAY
            stack.append(n)
            for d in self.dependencies_of(n):
                if state[d] == _GRAY:
                    start = stack.index(d)
                    raise CycleDetectedError([self.nodes[i] for i in stack[start:]])
                if state[d] == _WHITE:
                    dfs(d)
            stack.pop()
            state[n] = _BLACK
            result.append(n)

        for n in range(len(self.nodes)):
            if state[n] == _WHITE:
                dfs(n)
        return result

    def to_dot(self) -> str:
        """Graphviz DOT representation (edges point from dependent to dependency)."""
        lines = ["digraph build {"]
        for name, kind in zip(self.nodes, self.kinds):
            shape = "box" if kind == KIND_NODE else "ellipse"
            lines.append(f'  "{name}" [shape={shape}];')
        for a, b in self.edges:
            lines.append(f'  "{self.nodes[b]}" -> "{self.nodes[a]}";')
        lines.append("}")
        return "\n".join(lines)

# -----------------------
# Public API
# -----------------------
def resolve(spec: BuildSpec) -> OrderedTargets:
    """Return targets in build order. Raises CycleDetectedError / UnknownDependencyError."""
    graph = DependencyGraph.from_spec(spec)
    order = graph.topological_order()
    targets = tuple(
        Target(
            name=graph.nodes[i],
            kind=graph.kinds[i],
            dependencies=tuple(graph.nodes[d] for d in graph.dependencies_of(i)),
            library=graph.libraries[i],
        )
        for i in order
    )
    logger.info("resolved build order: %s", " -> ".join(t.name for t in targets))
    return targets
