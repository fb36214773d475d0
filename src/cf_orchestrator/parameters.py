"""
Parameter sources
Loads per-environment parameter files and flattens them into CloudFormation parameter lists
"""
import json
import logging
import os
from typing import Any, Dict, Iterable, List, Optional

from .exceptions import ParameterSourceError

logger = logging.getLogger(__name__)


def load_parameter_file(path: str) -> Dict[str, str]:
    """
    Load a parameter file into a name -> value mapping

    Accepts the formats understood by ``aws cloudformation deploy
    --parameter-overrides file://``:

        {"Parameters": {"Name": "value"}}
        {"Name": "value"}
        [{"ParameterKey": "Name", "ParameterValue": "value"}]

    Raises:
        ParameterSourceError: If the file is missing, is not valid JSON or
            holds values that are not scalars
    """
    if not os.path.isfile(path):
        raise ParameterSourceError(path, "file not found")

    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ParameterSourceError(path, f"invalid JSON: {e}")
    except OSError as e:
        raise ParameterSourceError(path, f"cannot be read: {e}")

    if isinstance(data, dict) and 'Parameters' in data:
        data = data['Parameters']

    if isinstance(data, list):
        return _from_parameter_list(path, data)
    if isinstance(data, dict):
        return {str(name): _to_string(path, name, value) for name, value in data.items()}

    raise ParameterSourceError(path, "expected a JSON object or a list of ParameterKey/ParameterValue entries")


def _from_parameter_list(path: str, entries: List[Any]) -> Dict[str, str]:
    parameters = {}
    for entry in entries:
        if not isinstance(entry, dict) or 'ParameterKey' not in entry or 'ParameterValue' not in entry:
            raise ParameterSourceError(path, f"malformed parameter entry: {entry!r}")
        name = str(entry['ParameterKey'])
        parameters[name] = _to_string(path, name, entry['ParameterValue'])
    return parameters


def _to_string(path: str, name: Any, value: Any) -> str:
    # Values are opaque strings; render JSON scalars the way jq does
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, (str, int, float)):
        return str(value)
    raise ParameterSourceError(path, f"parameter {name} must be a string or number, got {type(value).__name__}")


def build_parameter_list(
    values: Dict[str, str],
    template_keys: Optional[Iterable[str]] = None,
    is_update: bool = False,
) -> List[Dict[str, Any]]:
    """
    Flatten a parameter mapping into the CloudFormation ``Parameters`` shape

    When the template's declared keys are known, values the template does not
    declare are dropped, and on update declared keys without a value keep
    their previous value.
    """
    if template_keys is None:
        return [{'ParameterKey': name, 'ParameterValue': values[name]} for name in sorted(values)]

    declared = list(template_keys)
    unused = sorted(set(values) - set(declared))
    if unused:
        logger.debug(f"Ignoring parameters not declared by template: {', '.join(unused)}")

    parameters = []
    for name in declared:
        if name in values:
            parameters.append({'ParameterKey': name, 'ParameterValue': values[name]})
        elif is_update:
            parameters.append({'ParameterKey': name, 'UsePreviousValue': True})
    return parameters


class ParameterStore:
    """Resolves and caches parameter sources for one orchestrator process"""

    def __init__(self, base_dir: str = '.'):
        self.base_dir = base_dir
        self._cache: Dict[str, Dict[str, str]] = {}

    def path_for(self, source_ref: str) -> str:
        if os.path.isabs(source_ref):
            return source_ref
        return os.path.join(self.base_dir, source_ref)

    def load(self, source_ref: str) -> Dict[str, str]:
        path = self.path_for(source_ref)
        if path not in self._cache:
            logger.info(f"Loading parameters from {path}")
            self._cache[path] = load_parameter_file(path)
        return dict(self._cache[path])
