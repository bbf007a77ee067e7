"""
Security policy enforcement.

Two layers:
- analyze_code: a textual pre-execution scan of the raw source against the
  language's banned functions, modules and keywords. It is regex based, does
  not understand comments or string literals, and is therefore a best-effort
  filter rather than semantic analysis. Where a policy has an allow-list,
  literal imports of anything outside it are rejected as well.
- Runtime interception for the managed interpreter: an __import__ replacement
  handing out filtered module views, an AST pass rejecting dunder attribute
  access, and loop instrumentation.
"""

import ast
import builtins
import re
import types
from typing import Callable, Dict, List, Optional, Tuple

from .models import Language
from .registry import SecurityPolicy


# ===== STATIC SCAN =====

def _function_pattern(name: str) -> str:
    # Dotted names match literally; bare names must not be an attribute call
    # (so `re.compile(` is not mistaken for `compile(`).
    if '.' in name:
        return rf"(?<![\w$]){re.escape(name)}\s*\("
    return rf"(?<![\w.$]){re.escape(name)}\s*\("


def _module_patterns(language: Language, module: str) -> List[str]:
    m = re.escape(module)
    if language == Language.PYTHON:
        return [
            rf"^\s*import\s+(?:[\w.]+(?:\s+as\s+\w+)?\s*,\s*)*{m}(?!\w)",
            rf"^\s*from\s+{m}(?:\.[\w.]+)?\s+import\b",
        ]
    if language in (Language.JAVASCRIPT, Language.TYPESCRIPT):
        return [
            rf"require\s*\(\s*['\"`](?:node:)?{m}['\"`]\s*\)",
            rf"\bimport\s+(?:[^;]*?\s+from\s+)?['\"](?:node:)?{m}['\"]",
            rf"\bimport\s*\(\s*['\"`](?:node:)?{m}['\"`]\s*\)",
        ]
    if language == Language.JAVA:
        return [rf"\bimport\s+(?:static\s+)?{m}"]
    if language == Language.CPP:
        return [rf"#\s*include\s*{m}"]
    return [m]


# Module specifiers as written in JavaScript/TypeScript source.
_JS_SPECIFIER_PATTERNS = (
    re.compile(r"\brequire\s*\(\s*(['\"`])(.*?)\1\s*\)"),
    re.compile(r"\bimport\s+[^;'\"`]*?\bfrom\s*(['\"])(.*?)\1"),
    re.compile(r"\bimport\s*(['\"])(.*?)\1"),
    re.compile(r"\bimport\s*\(\s*(['\"`])(.*?)\1\s*\)"),
    re.compile(r"\bexport\s+[^;'\"`]*?\bfrom\s*(['\"])(.*?)\1"),
)
# require(name) / import(name) with anything but a string literal.
_JS_DYNAMIC_LOAD = re.compile(r"(?<![\w.$])(?:require|import)\s*\(\s*(?!['\"`])")
_PY_IMPORT = re.compile(r"^\s*import\s+([\w.]+(?:\s+as\s+\w+)?(?:\s*,\s*[\w.]+(?:\s+as\s+\w+)?)*)", re.MULTILINE)
_PY_FROM_IMPORT = re.compile(r"^\s*from\s+([\w.]+)\s+import\b", re.MULTILINE)


def _module_root(language: Language, specifier: str) -> str:
    if language in (Language.JAVASCRIPT, Language.TYPESCRIPT):
        if specifier.startswith('node:'):
            specifier = specifier[len('node:'):]
        return specifier.split('/')[0]
    return specifier.split('.')[0]


def imported_modules(code: str, language: Language) -> List[str]:
    """Module names the source loads with a literal import/require, in order of appearance."""
    found = []
    if language == Language.PYTHON:
        for match in _PY_IMPORT.finditer(code):
            found.extend(part.split()[0] for part in match.group(1).split(','))
        found.extend(match.group(1) for match in _PY_FROM_IMPORT.finditer(code))
    elif language in (Language.JAVASCRIPT, Language.TYPESCRIPT):
        for pattern in _JS_SPECIFIER_PATTERNS:
            found.extend(match.group(2) for match in pattern.finditer(code))
    return found


def _check_allowed_modules(code: str, language: Language, allowed) -> Optional[str]:
    if language in (Language.JAVASCRIPT, Language.TYPESCRIPT) and _JS_DYNAMIC_LOAD.search(code):
        return "Dynamic require/import is not allowed"
    for specifier in imported_modules(code, language):
        if _module_root(language, specifier) not in allowed:
            return f"Module not allowed: {specifier}"
    return None


def analyze_code(
    code: str,
    language: Language,
    policy: SecurityPolicy
) -> Tuple[bool, Optional[str]]:
    """
    Scan source text for banned functions, modules and keywords.

    When the policy has an allow-list, every literal import/require must name
    a listed module, and JavaScript/TypeScript may not load modules through a
    computed name.

    Args:
        code: Raw submitted source
        language: Language of the source, selects the module-reference syntax
        policy: Security policy for that language

    Returns:
        Tuple of (has_violation, reason)
    """
    for func in sorted(policy.banned_functions):
        if re.search(_function_pattern(func), code):
            return True, f"Banned function used: {func}"

    for module in sorted(policy.banned_modules):
        for pattern in _module_patterns(language, module):
            if re.search(pattern, code, re.MULTILINE):
                return True, f"Banned module used: {module}"

    for keyword in sorted(policy.banned_keywords):
        if re.search(rf"\b{re.escape(keyword)}\b", code):
            return True, f"Banned keyword used: {keyword}"

    if policy.allowed_modules is not None:
        reason = _check_allowed_modules(code, language, policy.allowed_modules)
        if reason:
            return True, reason

    return False, None


# ===== RUNTIME LAYER (managed interpreter) =====

class ExecutionAborted(BaseException):
    """
    Raised into running user code to stop it.

    Derives from BaseException so that `except Exception` in user code does
    not absorb it.
    """


class LoopLimitExceeded(ExecutionAborted):
    pass


class RecursionLimitExceeded(ExecutionAborted):
    pass


def _public_view(
    module: types.ModuleType,
    admits: Callable[[str], bool],
    views: Dict[str, types.ModuleType]
) -> types.ModuleType:
    name = module.__name__
    if name in views:
        return views[name]
    view = types.ModuleType(name)
    views[name] = view
    for key, value in vars(module).items():
        if key.startswith('_'):
            continue
        if isinstance(value, types.ModuleType):
            # json.codecs, re.enum, ...: reachable only if the import itself would be
            if not admits(value.__name__):
                continue
            value = _public_view(value, admits, views)
        view.__dict__[key] = value
    return view


class RestrictedImporter:
    """
    __import__ replacement that enforces the module deny/allow lists.

    User code receives a copy of the module holding only its public names, so
    private helpers (e.g. `random._os`) are unreachable and assignments to
    module attributes do not leak into the host. Module-valued attributes are
    filtered the same way, recursively: a module the policy would not let the
    code import is not reachable through another one either.
    """

    def __init__(self, policy: SecurityPolicy, import_fn: Callable = builtins.__import__):
        self.policy = policy
        self._import = import_fn
        self._views: Dict[str, types.ModuleType] = {}

    def _rejection(self, name: str) -> Optional[str]:
        root = name.split('.')[0]
        if root in self.policy.banned_modules or name in self.policy.banned_modules:
            return f"Import of module '{name}' is blocked by the security policy"
        allowed = self.policy.allowed_modules
        if allowed is not None and root not in allowed:
            return f"Module '{name}' is not in the allowed module list"
        return None

    def admits(self, name: str) -> bool:
        return self._rejection(name) is None

    def __call__(self, name, globals=None, locals=None, fromlist=(), level=0):
        if level:
            raise ImportError("Relative imports are not allowed")

        reason = self._rejection(name)
        if reason:
            raise ImportError(reason)

        module = self._import(name, globals, locals, fromlist, level)
        if isinstance(module, types.ModuleType):
            return _public_view(module, self.admits, self._views)
        return module


LOOP_GUARD_NAME = "__loop_guard__"

# Frame and code object attributes that lead back to interpreter internals.
_FORBIDDEN_ATTRIBUTES = frozenset({
    "gi_frame", "gi_code", "cr_frame", "cr_code", "ag_frame", "ag_code",
    "f_globals", "f_locals", "f_builtins", "f_back", "f_code", "tb_frame",
    "tb_next", "func_globals", "format_map",
})
_ALLOWED_DUNDER_NAMES = frozenset({"__name__"})
_ALLOWED_DUNDER_ATTRIBUTES = frozenset({
    "__init__", "__name__", "__str__", "__repr__", "__len__", "__iter__",
    "__next__", "__eq__", "__ne__", "__lt__", "__le__", "__gt__", "__ge__",
    "__hash__", "__contains__", "__getitem__", "__setitem__", "__delitem__",
    "__add__", "__sub__", "__mul__",
})
# str.format can walk attributes ("{0.__class__}") outside of the AST.
_FORMAT_FIELD_ESCAPE = re.compile(r"\{[^{}]*(?:\.|\[)\s*_")


def _is_dunder(name: str) -> bool:
    return name.startswith('__') and name.endswith('__')


def check_restricted_tree(tree: ast.AST) -> Optional[str]:
    """Return a violation reason if the AST reaches for interpreter internals."""
    for node in ast.walk(tree):
        if isinstance(node, ast.Attribute):
            attr = node.attr
            if attr in _FORBIDDEN_ATTRIBUTES or (
                    _is_dunder(attr) and attr not in _ALLOWED_DUNDER_ATTRIBUTES):
                return f"Access to attribute '{attr}' is not allowed"
        elif isinstance(node, ast.Name):
            if node.id.startswith('__') and node.id not in _ALLOWED_DUNDER_NAMES:
                return f"Use of name '{node.id}' is not allowed"
        elif isinstance(node, ast.Constant) and isinstance(node.value, str):
            if _FORMAT_FIELD_ESCAPE.search(node.value):
                return "Format fields referencing private attributes are not allowed"
        elif isinstance(node, ast.ImportFrom) and node.level:
            return "Relative imports are not allowed"
    return None


class LoopGuard:
    """Counts iterations per loop instance and aborts past the ceiling."""

    def __init__(self, max_iterations: int):
        self.max_iterations = max_iterations
        self._counts: Dict[int, int] = {}

    def enter(self, loop_id: int):
        self._counts[loop_id] = 0

    def tick(self, loop_id: int):
        count = self._counts.get(loop_id, 0) + 1
        if count > self.max_iterations:
            raise LoopLimitExceeded(
                f"Loop iteration limit exceeded ({self.max_iterations} iterations)"
            )
        self._counts[loop_id] = count


class _LoopInstrumenter(ast.NodeTransformer):
    """Inserts guard.enter() before and guard.tick() inside every loop."""

    def __init__(self):
        self.next_id = 0

    def _guard_call(self, method: str, loop_id: int) -> ast.stmt:
        return ast.Expr(value=ast.Call(
            func=ast.Attribute(
                value=ast.Name(id=LOOP_GUARD_NAME, ctx=ast.Load()),
                attr=method,
                ctx=ast.Load(),
            ),
            args=[ast.Constant(value=loop_id)],
            keywords=[],
        ))

    def _instrument(self, node):
        self.generic_visit(node)
        loop_id = self.next_id
        self.next_id += 1
        node.body.insert(0, self._guard_call("tick", loop_id))
        return [self._guard_call("enter", loop_id), node]

    visit_For = _instrument
    visit_AsyncFor = _instrument
    visit_While = _instrument


def instrument(tree: ast.Module) -> ast.Module:
    """Add loop counters to a parsed module. Mutates and returns the tree."""
    tree = _LoopInstrumenter().visit(tree)
    return ast.fix_missing_locations(tree)
