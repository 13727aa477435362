"""Evaluation of '$(VARIABLE)' references in plist and metadata strings."""

import logging
import re
import time
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable

from .config import FlatAppConfiguration
from .errors import CommandError, VariableError
from .utils import run_command

VARIABLE_PATTERN = re.compile(r"\$\(([^()]*)\)")


def _rfc1034(text: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "-", text)


class VariableEvaluator:
    """Resolves the variables available to one app.

    Git-derived values are computed lazily and at most once.

    Args:
        app: The flattened app the strings belong to
        package_directory: Root of the package (used for git queries)
    """

    def __init__(self, app: FlatAppConfiguration, package_directory: Path):
        self.app = app
        self.package_directory = package_directory
        self._cache: dict[str, str] = {}
        self.log = logging.getLogger(self.__class__.__name__)

    def _git(self, *args: str) -> str:
        try:
            output = run_command(
                ["git", "-C", str(self.package_directory), *args],
                log=self.log,
            )
        except CommandError as e:
            raise VariableError(
                f"Failed to evaluate git variable ('git {' '.join(args)}')"
            ) from e
        return output.strip()

    def value(self, name: str) -> str:
        """Return the value of a variable.

        Raises:
            VariableError: If the variable is unknown or cannot be computed
        """
        if name in self._cache:
            return self._cache[name]
        product_id = _rfc1034(self.app.product)
        handlers: dict[str, Callable[[], str]] = {
            "VERSION": lambda: self.app.version,
            "MARKETING_VERSION": lambda: self.app.version,
            "CURRENT_PROJECT_VERSION": lambda: self.app.version,
            "PRODUCT_BUNDLE_IDENTIFIER": lambda: self.app.identifier,
            "PRODUCT_NAME": lambda: self.app.product,
            "PRODUCT_NAME:rfc1034identifier": lambda: product_id,
            "PRODUCT_MODULE_NAME": lambda: product_id.replace("-", "_"),
            "PRODUCT_BUNDLE_PACKAGE_TYPE": lambda: "APPL",
            "DEVELOPMENT_LANGUAGE": lambda: "en",
            "SRCROOT": lambda: ".",
            "UNIX_TIMESTAMP": lambda: str(int(time.time())),
            "COMMIT_HASH": lambda: self._git("rev-parse", "HEAD"),
            "REVISION_NUMBER": lambda: self._git("rev-list", "--count", "HEAD"),
        }
        if name not in handlers:
            raise VariableError(f"Unknown variable '$({name})'")
        self._cache[name] = handlers[name]()
        return self._cache[name]

    def evaluate(self, text: str) -> str:
        return VARIABLE_PATTERN.sub(lambda m: self.value(m.group(1)), text)

    def evaluate_value(self, value: Any) -> Any:
        """Evaluate variables in every string nested inside value."""
        if isinstance(value, str):
            return self.evaluate(value)
        if isinstance(value, list):
            return [self.evaluate_value(item) for item in value]
        if isinstance(value, dict):
            return {
                key: self.evaluate_value(item) for key, item in value.items()
            }
        return value


def evaluate_variables(
    app: FlatAppConfiguration, package_directory: Path
) -> FlatAppConfiguration:
    """Return a copy of app with variables in plist and metadata evaluated."""
    evaluator = VariableEvaluator(app, package_directory)
    return replace(
        app,
        plist=evaluator.evaluate_value(app.plist),
        metadata=evaluator.evaluate_value(app.metadata),
    )
