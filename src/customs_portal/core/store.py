"""Read-only target configuration store keyed by portal code."""

import json
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from pydantic import ValidationError

from customs_portal.core.errors import ConfigurationError, UnknownTarget
from customs_portal.core.models import Target
from customs_portal.utils.logging import get_logger

logger = get_logger(__name__)


class TargetConfigStore:
    """
    Holds Target aggregates (pages, field mappings, dropdown values) by code.

    Readers always receive a deep-copied snapshot, so edits registered after a
    submission has started never leak into it.
    """

    def __init__(self, targets: Optional[Iterable[Target]] = None):
        self._targets: Dict[str, Target] = {}
        self.logger = logger.bind(component="target_store")
        for target in targets or []:
            self.register(target)

    def register(self, target: Target, replace: bool = False) -> None:
        if target.code in self._targets and not replace:
            raise ConfigurationError(f"Target '{target.code}' is already registered", target=target.code)
        self._targets[target.code] = target.model_copy(deep=True)
        self.logger.debug("Target registered", target=target.code, pages=len(target.pages))

    def remove(self, code: str) -> None:
        """Drop a target together with its pages, mappings and dropdown values."""
        if self._targets.pop(code, None) is None:
            raise UnknownTarget(f"Unknown target '{code}'", target=code)

    def get(self, code: str) -> Target:
        target = self._targets.get(code)
        if target is None:
            raise UnknownTarget(f"Unknown target '{code}'", target=code)
        return target.model_copy(deep=True)

    def list(self) -> List[Target]:
        return [target.model_copy(deep=True) for target in self._targets.values()]

    def __contains__(self, code: str) -> bool:
        return code in self._targets

    def __len__(self) -> int:
        return len(self._targets)

    def load_file(self, path: Union[str, Path], replace: bool = True) -> Target:
        path = Path(path)
        try:
            target = Target.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (ValidationError, ValueError) as e:
            raise ConfigurationError(f"Invalid target configuration in {path.name}: {e}", path=str(path)) from e
        self.register(target, replace=replace)
        return target

    def load_directory(self, directory: Union[str, Path]) -> int:
        directory = Path(directory)
        if not directory.is_dir():
            self.logger.warning("Target directory not found", directory=str(directory))
            return 0
        loaded = 0
        for path in sorted(directory.glob("*.json")):
            self.load_file(path)
            loaded += 1
        self.logger.info("Targets loaded", directory=str(directory), count=loaded)
        return loaded
