"""
Per-language runtime and security configuration.

Both tables are keyed by the closed Language enum, populated once at import
and exposed through read-only mappings. Adding a language means adding an
entry here; nothing else in the code path branches on the language.
"""

import sys
from dataclasses import asdict, dataclass
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from .models import Language, IsolationKind


@dataclass(frozen=True)
class LanguageRuntimeConfig:
    """How code in one language is built and run."""
    file_extension: str
    source_file: str
    run_command: Tuple[str, ...]
    isolation: IsolationKind
    compile_command: Optional[Tuple[str, ...]] = None
    image: Optional[str] = None  # container image, for IsolationKind.CONTAINER


@dataclass(frozen=True)
class SecurityPolicy:
    """Deny/allow lists and numeric ceilings for one language."""
    banned_functions: FrozenSet[str]
    banned_modules: FrozenSet[str]
    banned_keywords: FrozenSet[str] = frozenset()
    allowed_modules: Optional[FrozenSet[str]] = None
    max_loop_iterations: int = 10000
    max_recursion_depth: int = 1000
    max_execution_time_ms: int = 5000
    max_memory_mb: int = 256

    def to_dict(self) -> Dict[str, Any]:
        return {
            key: sorted(value) if isinstance(value, frozenset) else value
            for key, value in asdict(self).items()
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> 'SecurityPolicy':
        """Inverse of to_dict; list fields become frozensets."""
        fields = dict(data)
        for key in ('banned_functions', 'banned_modules', 'banned_keywords', 'allowed_modules'):
            if fields.get(key) is not None:
                fields[key] = frozenset(fields[key])
        return SecurityPolicy(**fields)


RUNTIMES: Mapping[Language, LanguageRuntimeConfig] = MappingProxyType({
    Language.PYTHON: LanguageRuntimeConfig(
        file_extension="py",
        source_file="main.py",
        # managed interpreter in a child process of the current interpreter
        run_command=(sys.executable, "-m", "coderunner.interpreter", "main.py"),
        isolation=IsolationKind.RESTRICTED,
    ),
    Language.JAVASCRIPT: LanguageRuntimeConfig(
        file_extension="js",
        source_file="main.js",
        run_command=("node", "main.js"),
        isolation=IsolationKind.WORKER,
    ),
    Language.TYPESCRIPT: LanguageRuntimeConfig(
        file_extension="ts",
        source_file="main.ts",
        compile_command=("tsc", "--target", "es2019", "--module", "commonjs", "main.ts"),
        run_command=("node", "main.js"),
        isolation=IsolationKind.WORKER,
    ),
    Language.JAVA: LanguageRuntimeConfig(
        file_extension="java",
        source_file="Main.java",
        compile_command=("javac", "Main.java"),
        run_command=("java", "-Xss64m", "Main"),
        isolation=IsolationKind.CONTAINER,
        image="eclipse-temurin:17-jdk",
    ),
    Language.CPP: LanguageRuntimeConfig(
        file_extension="cpp",
        source_file="main.cpp",
        compile_command=("g++", "-std=c++14", "-O2", "-o", "program", "main.cpp"),
        run_command=("./program",),
        isolation=IsolationKind.CONTAINER,
        image="gcc:11",
    ),
})


_JS_BANNED_FUNCTIONS = frozenset({"eval", "Function", "setTimeout", "setInterval", "process.exit"})
_JS_BANNED_MODULES = frozenset({"fs", "child_process", "http", "https", "net", "dgram", "dns", "os", "cluster"})
_JS_ALLOWED_MODULES = frozenset({"assert", "buffer", "crypto", "path", "util", "stream", "url",
                                 "querystring", "readline"})

SECURITY_POLICIES: Mapping[Language, SecurityPolicy] = MappingProxyType({
    Language.PYTHON: SecurityPolicy(
        banned_functions=frozenset({"eval", "exec", "compile", "__import__", "open",
                                    "breakpoint", "os.system", "subprocess"}),
        banned_modules=frozenset({"os", "subprocess", "sys", "importlib", "builtins",
                                  "shutil", "socket", "ctypes"}),
        allowed_modules=frozenset({"math", "random", "time", "collections", "heapq", "re",
                                   "json", "itertools", "functools", "bisect", "string"}),
        max_loop_iterations=1_000_000,
        max_memory_mb=256,
    ),
    Language.JAVASCRIPT: SecurityPolicy(
        banned_functions=_JS_BANNED_FUNCTIONS,
        banned_modules=_JS_BANNED_MODULES,
        allowed_modules=_JS_ALLOWED_MODULES,
        max_memory_mb=512,
    ),
    Language.TYPESCRIPT: SecurityPolicy(
        banned_functions=_JS_BANNED_FUNCTIONS,
        banned_modules=_JS_BANNED_MODULES,
        allowed_modules=_JS_ALLOWED_MODULES,
        max_memory_mb=512,
    ),
    Language.JAVA: SecurityPolicy(
        banned_functions=frozenset({"System.exit", "Runtime.getRuntime"}),
        banned_modules=frozenset({"java.io.File", "java.net", "java.nio.file"}),
        max_memory_mb=512,
    ),
    Language.CPP: SecurityPolicy(
        banned_functions=frozenset({"system", "exec", "popen", "fork"}),
        banned_modules=frozenset({"<fstream>", "<filesystem>"}),
        max_memory_mb=256,
    ),
})


def resolve_language(value) -> Optional[Language]:
    """Map a request's language string onto the registry key, or None."""
    if isinstance(value, Language):
        return value if value in RUNTIMES else None
    try:
        language = Language(str(value).strip().lower())
    except ValueError:
        return None
    return language if language in RUNTIMES else None
