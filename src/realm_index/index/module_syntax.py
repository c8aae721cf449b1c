"""Static analysis of card modules (Python source parsed with ast, never executed).

A card module declares card classes with a single super type and fields of
the form ``name = field(contains(SomeCard))``. The analysis records, for every
top-level class, how its super type and field cards are referenced: either a
class of the same module (``InternalClassRef``) or an exported name of another
module (``ExternalClassRef``). Whether a reference is actually a card, and
whether a field declaration uses the real ``field``/``contains`` markers, is
decided later by the definition resolver.
"""

from __future__ import annotations

import ast
from dataclasses import dataclass, field

from realm_index.errors import CardParseError
from realm_index.realm.paths import resolve_url


@dataclass(slots=True, frozen=True)
class InternalClassRef:
    """Reference to a top-level class of the same module."""

    class_index: int


@dataclass(slots=True, frozen=True)
class ExternalClassRef:
    """Reference to an exported name of another module (module may be relative)."""

    module: str
    name: str


ClassReference = InternalClassRef | ExternalClassRef


@dataclass(slots=True, frozen=True)
class PossibleField:
    """Candidate field declaration found in a class body."""

    decorator: ClassReference
    type: ClassReference
    card: ClassReference


@dataclass(slots=True)
class PossibleCard:
    """Candidate card class."""

    local_name: str
    exported_as: str | None
    super: ClassReference | None
    possible_fields: dict[str, PossibleField] = field(default_factory=dict)
    line: int = 0


class ModuleSyntax:
    """Parsed view of one card module."""

    def __init__(
        self,
        possible_cards: list[PossibleCard],
        exports: dict[str, ClassReference],
        imports: tuple[str, ...],
    ) -> None:
        self.possible_cards = possible_cards
        self._exports = exports
        self._imports = imports

    @property
    def exported_names(self) -> tuple[str, ...]:
        """Return exported names (classes, aliases and re-exports) in sorted order."""
        return tuple(sorted(self._exports))

    def lookup_export(self, name: str) -> ClassReference | None:
        """Return what an exported name refers to."""
        return self._exports.get(name)

    def consumes(self, module_url: str) -> tuple[str, ...]:
        """Return absolute URLs of the modules this module imports."""
        return tuple(sorted({resolve_url(spec, module_url) for spec in self._imports}))


def parse_module(
    source: str, import_map: dict[str, str], *, url: str | None = None
) -> ModuleSyntax:
    """Parse module source; syntax errors become CardParseError."""
    try:
        tree = ast.parse(source)
    except (SyntaxError, ValueError) as error:
        raise CardParseError(f"Unable to parse module: {error}", source=url) from error

    scope = _ModuleScope(import_map)
    scope.visit(tree)
    return scope.build()


def module_specifier(module: str | None, level: int, import_map: dict[str, str]) -> str | None:
    """Translate a Python import target into a URL (relative ones stay relative)."""
    path = module.replace(".", "/") if module else ""
    if level > 0:
        prefix = "./" if level == 1 else "../" * (level - 1)
        return f"{prefix}{path}"
    if not module:
        return None
    top, _, rest = module.partition(".")
    target = import_map.get(top)
    if target is None:
        return None
    return f"{target}{rest.replace('.', '/')}"


class _ModuleScope(ast.NodeVisitor):
    """Collect module-level imports, classes, aliases and __all__."""

    def __init__(self, import_map: dict[str, str]) -> None:
        self._import_map = import_map
        self._symbols: dict[str, ExternalClassRef] = {}
        self._module_aliases: dict[str, str] = {}
        self._imports: set[str] = set()
        self._classes: list[ast.ClassDef] = []
        self._class_index: dict[str, int] = {}
        self._aliases: dict[str, ast.expr] = {}
        self._all: list[str] | None = None

    # module level only; class and function bodies are not visited
    def visit_ClassDef(self, node: ast.ClassDef) -> None:  # noqa: N802
        self._class_index[node.name] = len(self._classes)
        self._classes.append(node)

    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:  # noqa: N802
        return

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> None:  # noqa: N802
        return

    def visit_Import(self, node: ast.Import) -> None:  # noqa: N802
        for alias in node.names:
            spec = module_specifier(alias.name, 0, self._import_map)
            if spec is None:
                continue
            self._imports.add(spec)
            if alias.asname is not None:
                self._module_aliases[alias.asname] = spec
            else:
                self._module_aliases[alias.name] = spec

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:  # noqa: N802
        spec = module_specifier(node.module, node.level, self._import_map)
        if spec is None:
            return
        for alias in node.names:
            if alias.name == "*":
                continue
            local = alias.asname or alias.name
            self._symbols[local] = ExternalClassRef(module=spec, name=alias.name)
            if node.module is None:
                # `from . import pet` may bind a submodule
                submodule = f"{spec}{alias.name}"
                self._module_aliases[local] = submodule
                self._imports.add(submodule)
            else:
                self._imports.add(spec)

    def visit_Assign(self, node: ast.Assign) -> None:  # noqa: N802
        if len(node.targets) != 1 or not isinstance(node.targets[0], ast.Name):
            return
        name = node.targets[0].id
        if name == "__all__":
            self._all = _string_list(node.value)
            return
        self._aliases[name] = node.value

    def build(self) -> ModuleSyntax:
        possible_cards: list[PossibleCard] = []
        for node in self._classes:
            super_ref = self._resolve(node.bases[0]) if node.bases else None
            possible_fields: dict[str, PossibleField] = {}
            for stmt in node.body:
                parsed = self._possible_field(stmt)
                if parsed is not None:
                    possible_fields[parsed[0]] = parsed[1]
            possible_cards.append(
                PossibleCard(
                    local_name=node.name,
                    exported_as=node.name if self._is_exported(node.name) else None,
                    super=super_ref,
                    possible_fields=possible_fields,
                    line=node.lineno,
                )
            )

        exports: dict[str, ClassReference] = {}
        for index, card in enumerate(possible_cards):
            # later definitions of the same name shadow earlier ones
            if card.exported_as is not None and self._class_index[card.local_name] == index:
                exports[card.exported_as] = InternalClassRef(class_index=index)
        for name, value in self._aliases.items():
            if not self._is_exported(name):
                continue
            resolved = self._resolve(value)
            if resolved is not None:
                exports[name] = resolved
        if self._all is not None:
            for name in self._all:
                if name not in exports and name in self._symbols:
                    exports[name] = self._symbols[name]
        return ModuleSyntax(
            possible_cards=possible_cards,
            exports=exports,
            imports=tuple(sorted(self._imports)),
        )

    def _is_exported(self, name: str) -> bool:
        if self._all is not None:
            return name in self._all
        return not name.startswith("_")

    def _possible_field(self, stmt: ast.stmt) -> tuple[str, PossibleField] | None:
        if isinstance(stmt, ast.Assign):
            if len(stmt.targets) != 1 or not isinstance(stmt.targets[0], ast.Name):
                return None
            name = stmt.targets[0].id
            value: ast.expr | None = stmt.value
        elif isinstance(stmt, ast.AnnAssign) and isinstance(stmt.target, ast.Name):
            name = stmt.target.id
            value = stmt.value
        else:
            return None
        if not isinstance(value, ast.Call) or len(value.args) != 1:
            return None
        inner = value.args[0]
        if not isinstance(inner, ast.Call) or len(inner.args) != 1:
            return None
        decorator = self._resolve(value.func)
        field_type = self._resolve(inner.func)
        card = self._resolve(inner.args[0])
        if decorator is None or field_type is None or card is None:
            return None
        return name, PossibleField(decorator=decorator, type=field_type, card=card)

    def _resolve(self, node: ast.expr, seen: frozenset[str] = frozenset()) -> ClassReference | None:
        if isinstance(node, ast.Name):
            name = node.id
            if name in self._class_index:
                return InternalClassRef(class_index=self._class_index[name])
            if name in self._symbols:
                return self._symbols[name]
            if name in self._aliases and name not in seen:
                return self._resolve(self._aliases[name], seen | {name})
            return None
        if isinstance(node, ast.Attribute):
            prefix = _dotted_name(node.value)
            if prefix is not None and prefix in self._module_aliases:
                return ExternalClassRef(module=self._module_aliases[prefix], name=node.attr)
        return None


def _dotted_name(node: ast.AST) -> str | None:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        parent = _dotted_name(node.value)
        if parent is None:
            return None
        return f"{parent}.{node.attr}"
    return None


def _string_list(node: ast.expr) -> list[str]:
    if not isinstance(node, (ast.List, ast.Tuple)):
        return []
    return [
        element.value
        for element in node.elts
        if isinstance(element, ast.Constant) and isinstance(element.value, str)
    ]
