# autoui/bundler.py
"""
Compile step: walk the import graph of the virtual source tree starting at
one entry module and produce a single bundle text.

    result = bundle("/src/main.py", vfs.snapshot())
    result.code     # python source defining __entry__ and __modules__
    result.modules  # VFS paths in resolution order

Which imports are resolved against the VFS:
- relative imports (from .x import y / from . import x / from ..pkg import z)
- absolute imports whose first dotted segment is a top-level VFS directory
  (src.ac.weather when the tree holds /src/...)

Everything else is a bare module name and is imported normally at run time.
Resolved imports are rewritten into __require__(path) lookups; the loader
(runtime.BundleHandle) provides __require__ and __star__.
"""

import ast
import posixpath
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple


class CompileError(Exception):
    def __init__(self, message: str, specifier: Optional[str] = None, importer: Optional[str] = None):
        super().__init__(message)
        self.specifier = specifier
        self.importer = importer


@dataclass
class BundleResult:
    code: str
    ms: float
    entry: str
    modules: List[str] = field(default_factory=list)


def _candidates(base: str) -> Tuple[str, str]:
    return f"{base}.py", f"{base}/__init__.py"


def _package_dir(importer: str) -> str:
    # the package of /a/b/c.py and of /a/b/__init__.py is /a/b either way
    return posixpath.dirname(importer)


class _ImportResolver:
    def __init__(self, files: Dict[str, str]):
        self.files = files
        self.roots: Set[str] = set()
        for path in files:
            parts = path.split("/")
            if len(parts) > 2 and path.startswith("/") and parts[1]:
                self.roots.add(parts[1])

    def lookup(self, base: str) -> Optional[str]:
        for candidate in _candidates(base):
            if candidate in self.files:
                return candidate
        return None

    def is_vfs_absolute(self, dotted: str) -> bool:
        return bool(dotted) and dotted.split(".")[0] in self.roots

    def relative_base(self, importer: str, level: int, module: Optional[str]) -> str:
        base = _package_dir(importer)
        for _ in range(level - 1):
            if base in ("", "/"):
                raise CompileError(
                    f"Relative import beyond top-level package in {importer}",
                    specifier="." * level + (module or ""),
                    importer=importer,
                )
            base = posixpath.dirname(base)
        if module:
            base = posixpath.join(base, *module.split("."))
        return base

    def require(self, base: str, specifier: str, importer: str) -> str:
        found = self.lookup(base)
        if found is None:
            raise CompileError(
                f"Cannot resolve import '{specifier}' from {importer}",
                specifier=specifier,
                importer=importer,
            )
        return found


def _require_call(path: str) -> ast.expr:
    return ast.Call(
        func=ast.Name(id="__require__", ctx=ast.Load()),
        args=[ast.Constant(value=path)],
        keywords=[],
    )


def _assign(name: str, value: ast.expr) -> ast.stmt:
    return ast.Assign(targets=[ast.Name(id=name, ctx=ast.Store())], value=value)


class _ImportRewriter(ast.NodeTransformer):
    def __init__(self, resolver: _ImportResolver, importer: str):
        self.resolver = resolver
        self.importer = importer
        self.dependencies: List[str] = []

    def _depend(self, path: str) -> str:
        if path not in self.dependencies:
            self.dependencies.append(path)
        return path

    def visit_Import(self, node: ast.Import):
        out: List[ast.stmt] = []
        kept: List[ast.alias] = []
        for alias in node.names:
            if not self.resolver.is_vfs_absolute(alias.name):
                kept.append(alias)
                continue
            if not alias.asname:
                raise CompileError(
                    f"'import {alias.name}' needs an alias ('import {alias.name} as name') in {self.importer}",
                    specifier=alias.name,
                    importer=self.importer,
                )
            base = "/" + alias.name.replace(".", "/")
            path = self._depend(self.resolver.require(base, alias.name, self.importer))
            out.append(_assign(alias.asname, _require_call(path)))
        if kept:
            out.insert(0, ast.Import(names=kept))
        return [ast.copy_location(stmt, node) for stmt in out]

    def visit_ImportFrom(self, node: ast.ImportFrom):
        specifier = "." * node.level + (node.module or "")
        if node.level == 0:
            if not self.resolver.is_vfs_absolute(node.module or ""):
                return node
            base = "/" + node.module.replace(".", "/")
        else:
            base = self.resolver.relative_base(self.importer, node.level, node.module)

        if len(node.names) == 1 and node.names[0].name == "*":
            path = self._depend(self.resolver.require(base, specifier, self.importer))
            stmt = ast.Expr(
                value=ast.Call(
                    func=ast.Attribute(
                        value=ast.Call(func=ast.Name(id="globals", ctx=ast.Load()), args=[], keywords=[]),
                        attr="update",
                        ctx=ast.Load(),
                    ),
                    args=[
                        ast.Call(
                            func=ast.Name(id="__star__", ctx=ast.Load()),
                            args=[_require_call(path)],
                            keywords=[],
                        )
                    ],
                    keywords=[],
                )
            )
            return ast.copy_location(stmt, node)

        package_path = self.resolver.lookup(base)
        out: List[ast.stmt] = []
        for alias in node.names:
            bound = alias.asname or alias.name
            # "from pkg import name" binds the submodule when pkg/name.py exists
            submodule = self.resolver.lookup(posixpath.join(base, alias.name))
            if submodule is not None:
                out.append(_assign(bound, _require_call(self._depend(submodule))))
                continue
            if package_path is None:
                raise CompileError(
                    f"Cannot resolve import '{specifier}' ({alias.name}) from {self.importer}",
                    specifier=specifier,
                    importer=self.importer,
                )
            value = ast.Attribute(value=_require_call(self._depend(package_path)), attr=alias.name, ctx=ast.Load())
            out.append(_assign(bound, value))
        return [ast.copy_location(stmt, node) for stmt in out]


def _parse(path: str, text: str) -> ast.Module:
    try:
        return ast.parse(text, filename=path)
    except SyntaxError as e:
        raise CompileError(f"{path}:{e.lineno}: {e.msg}", importer=path) from e


def rewrite_module(path: str, text: str, resolver: _ImportResolver) -> Tuple[str, List[str]]:
    tree = _parse(path, text)
    rewriter = _ImportRewriter(resolver, path)
    tree = rewriter.visit(tree)
    ast.fix_missing_locations(tree)
    return ast.unparse(tree), rewriter.dependencies


def bundle(entry: str, files: Dict[str, str]) -> BundleResult:
    """
    Resolve every module reachable from entry and emit one bundle text.
    Raises CompileError for a missing entry, a syntax error or an import
    that points into the VFS but matches no file.
    """
    started = time.perf_counter()
    if entry not in files:
        raise CompileError(f"Entry module not found: {entry}", specifier=entry)

    resolver = _ImportResolver(files)
    rewritten: Dict[str, str] = {}
    order: List[str] = []
    queue: List[str] = [entry]
    while queue:
        path = queue.pop(0)
        if path in rewritten:
            continue
        code, deps = rewrite_module(path, files[path], resolver)
        rewritten[path] = code
        order.append(path)
        queue.extend(d for d in deps if d not in rewritten)

    lines = [
        f"# bundle: {len(order)} module(s), entry {entry}",
        f"__entry__ = {entry!r}",
        "__modules__ = {",
    ]
    for path in order:
        lines.append(f"    {path!r}: {rewritten[path]!r},")
    lines.append("}")
    code = "\n".join(lines) + "\n"

    ms = round((time.perf_counter() - started) * 1000.0, 2)
    return BundleResult(code=code, ms=ms, entry=entry, modules=order)
