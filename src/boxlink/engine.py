"""Execution engine contracts and a reference Python engine

The worker session only talks to its engine through three small
interfaces:

- ExecutionEngine: evaluate code, bind and look up named values
- ConsoleCapture: drain captured console output
- GraphicsCapture: redirect rendering to a file and read it back

`PythonEngine` implements all three over a plain namespace dict. It is what
the test suite runs against and what an embedding application can use
when the sandboxed language is Python itself.
"""

import ast
import contextlib
import io
import logging
import os
import tempfile
from typing import Any, Dict, Optional, Protocol

from boxlink.errors import EngineError, FatalError


logger = logging.getLogger(__name__)


class ExecutionEngine(Protocol):
    """Interpreter state the worker delegates evaluation to"""

    def evaluate(self, code: str) -> Any:
        """Evaluate code and return its value. Raises on failure."""
        ...

    def bind(self, name: str, value: Any) -> None:
        """Bind `value` under `name`"""
        ...

    def lookup(self, name: str) -> Any:
        """Return the value bound under `name`. Raises if missing."""
        ...


class ConsoleCapture(Protocol):
    def drain_output(self) -> str:
        """Return captured console output and clear the buffer"""
        ...


class GraphicsCapture(Protocol):
    def begin_capture(self, width: int, height: int) -> None:
        """Start redirecting rendering to an image of the given size"""
        ...

    def end_capture(self) -> bytes:
        """Finish rendering and return the image bytes"""
        ...


class PythonEngine:
    """Evaluates Python source in a persistent namespace.

    `evaluate` runs every statement; if the last one is an expression its
    value is returned, otherwise None. Output written with `print` goes to
    an internal console buffer instead of the process stdout.
    """

    def __init__(self, namespace: Optional[Dict[str, Any]] = None):
        self.namespace: Dict[str, Any] = namespace if namespace is not None else {}
        self.namespace.setdefault("__name__", "__boxlink__")
        self._console = io.StringIO()
        self._plot_file: Optional[str] = None

    # -----------------------------------------------------------------
    # ExecutionEngine
    # -----------------------------------------------------------------

    def evaluate(self, code: str) -> Any:
        try:
            tree = ast.parse(code, mode="exec")
        except SyntaxError as e:
            raise EngineError(f"SyntaxError: {e}")

        last_expr = None
        if tree.body and isinstance(tree.body[-1], ast.Expr):
            last_expr = ast.Expression(tree.body.pop().value)

        try:
            with contextlib.redirect_stdout(self._console):
                if tree.body:
                    exec(compile(tree, "<script>", "exec"), self.namespace)
                if last_expr is not None:
                    return eval(compile(last_expr, "<script>", "eval"), self.namespace)
                return None
        except (FatalError, EngineError):
            raise
        except (Exception, SystemExit) as e:
            # sys.exit() in a script fails the script, not the worker
            raise EngineError(f"{type(e).__name__}: {e}") from e

    def bind(self, name: str, value: Any) -> None:
        if not name.isidentifier():
            raise EngineError(f"invalid name: {name!r}")
        self.namespace[name] = value

    def lookup(self, name: str) -> Any:
        try:
            return self.namespace[name]
        except KeyError:
            raise EngineError(f"object '{name}' not found")

    # -----------------------------------------------------------------
    # ConsoleCapture
    # -----------------------------------------------------------------

    def drain_output(self) -> str:
        output = self._console.getvalue()
        self._console = io.StringIO()
        return output

    # -----------------------------------------------------------------
    # GraphicsCapture
    # -----------------------------------------------------------------

    def begin_capture(self, width: int, height: int) -> None:
        """Create a temp .png and expose it to scripts as `plot_file`

        Scripts render into `plot_file` at `plot_width` x `plot_height`.
        A capture already in progress is discarded.
        """
        if width <= 0 or height <= 0:
            raise EngineError(f"invalid plot size {width}x{height}")
        self._discard_plot_file()
        fd, path = tempfile.mkstemp(prefix="rs_plot", suffix=".png")
        os.close(fd)
        self._plot_file = path
        self.namespace["plot_file"] = path
        self.namespace["plot_width"] = width
        self.namespace["plot_height"] = height
        logger.debug("Plot capture started: %s (%dx%d)", path, width, height)

    def end_capture(self) -> bytes:
        if self._plot_file is None:
            raise EngineError("no plot capture in progress")
        path = self._plot_file
        try:
            with open(path, "rb") as f:
                data = f.read()
        except OSError as e:
            raise EngineError(f"could not read plot file: {e}")
        finally:
            self._discard_plot_file()
        return data

    def _discard_plot_file(self) -> None:
        path = self._plot_file
        self._plot_file = None
        for key in ("plot_file", "plot_width", "plot_height"):
            self.namespace.pop(key, None)
        if path is not None:
            with contextlib.suppress(FileNotFoundError):
                os.remove(path)
