"""
Variable substitution implementation.
Handles ${var} resolution with dot paths, list indexes and JSON-encoded values.

Resolution is fail-open: a reference that cannot be resolved is left in the
text verbatim so it shows up in reports exactly as written.
"""

import json
import re
from typing import Any, List, Mapping, Optional, Set, Union


# Reserved list of prior step results, appended to as steps complete
STEP_HISTORY_VAR = '__steps'

# Pseudo-variable exposing secrets explicitly: ${SECRETS.api_key}
SECRETS_NAMESPACE = 'SECRETS'

_MISSING = object()


def stringify(value: Any) -> str:
    """
    Convert a resolved value to the text inserted into a string.

    Args:
        value: Any variable value

    Returns:
        'true'/'false' for bools, 'null' for None, JSON for lists and dicts,
        decoded text for bytes, str() for everything else
    """
    if isinstance(value, bool):
        return 'true' if value else 'false'
    elif value is None:
        return 'null'
    elif isinstance(value, str):
        return value
    elif isinstance(value, (int, float)):
        return str(value)
    elif isinstance(value, (bytes, bytearray)):
        return bytes(value).decode('utf-8', errors='replace')
    elif isinstance(value, (dict, list, tuple)):
        try:
            return json.dumps(value, default=str)
        except (TypeError, ValueError):
            return str(value)
    else:
        return str(value)


class VariableSubstitutor:
    """
    Handles variable substitution in strings and data structures.

    Supported reference forms:
    - ${name}
    - ${name.path.to.field}: dict traversal; str/bytes values holding JSON
      are decoded transparently when traversal needs a container
    - ${name[0].field}, ${__steps[-1].error}: list indexes, negatives count
      from the end
    - ${SECRETS.name}: explicit secret lookup (provided by the store)

    The substitutor keeps no state, so one instance can serve concurrent steps.
    """

    # Pattern to match ${...} references
    VAR_PATTERN = re.compile(r'\$\{([^}]+)\}')

    # A reference path: name followed by .field and [index] segments
    PATH_PATTERN = re.compile(r'[^.\[\]]+(?:\.[^.\[\]]+|\[-?\d+\])*')
    SEGMENT_PATTERN = re.compile(r'\[(-?\d+)\]|([^.\[\]]+)')

    def substitute(
        self,
        value: Union[str, List, dict, Any],
        variables: Mapping[str, Any]
    ) -> Union[str, List, dict, Any]:
        """
        Substitute variables in a value (string, list, or dict).

        Dict keys are substituted as well as values. Other types pass
        through unchanged.

        Args:
            value: The value to substitute variables in
            variables: Name -> value mapping; only item lookup is used

        Returns:
            Value with variables substituted
        """
        if isinstance(value, str):
            return self.substitute_string(value, variables)
        elif isinstance(value, (list, tuple)):
            return [self.substitute(item, variables) for item in value]
        elif isinstance(value, dict):
            return {
                (self.substitute_string(k, variables) if isinstance(k, str) else k): self.substitute(v, variables)
                for k, v in value.items()
            }
        else:
            return value

    def substitute_string(self, text: str, variables: Mapping[str, Any]) -> str:
        """
        Substitute ${...} references in a string.

        Args:
            text: String containing ${var} references
            variables: Available variables

        Returns:
            String with resolvable references replaced
        """
        if '${' not in text:
            return text

        def replace_var(match):
            value = self.resolve(match.group(1).strip(), variables)
            if value is _MISSING:
                return match.group(0)
            return stringify(value)

        return self.VAR_PATTERN.sub(replace_var, text)

    def unresolved(self, text: str, variables: Mapping[str, Any]) -> List[str]:
        """List the references in text that cannot be resolved."""
        return [
            m.group(1) for m in self.VAR_PATTERN.finditer(text)
            if self.resolve(m.group(1).strip(), variables) is _MISSING
        ]

    def lookup(self, var_path: str, variables: Mapping[str, Any]) -> Any:
        """
        Resolve a reference path to its raw value.

        Returns:
            The value, or None when the path does not resolve
        """
        value = self.resolve(var_path, variables)
        return None if value is _MISSING else value

    def resolve(self, var_path: str, variables: Mapping[str, Any]) -> Any:
        """
        Resolve a variable path like 'user.name' or '__steps[0].error'.

        Args:
            var_path: Reference path without the ${ } wrapper
            variables: Available variables

        Returns:
            Resolved value, or the module sentinel when not found
        """
        segments = self._parse_path(var_path)
        if segments is None:
            return self._get(variables, var_path)

        current = self._get(variables, segments[0])
        if current is not _MISSING:
            for segment in segments[1:]:
                current = self._step_into(current, segment)
                if current is _MISSING:
                    break

        if current is _MISSING and len(segments) > 1:
            # A variable may itself be named with dots, e.g. "db.host"
            return self._get(variables, var_path)
        return current

    def _parse_path(self, var_path: str) -> Optional[List[Union[str, int]]]:
        """Split a reference path into field names and integer indexes."""
        if not self.PATH_PATTERN.fullmatch(var_path):
            return None
        segments: List[Union[str, int]] = []
        for index, name in self.SEGMENT_PATTERN.findall(var_path):
            segments.append(int(index) if index else name)
        return segments

    def _get(self, variables: Mapping[str, Any], name: str) -> Any:
        try:
            return variables[name]
        except KeyError:
            return _MISSING

    def _step_into(self, current: Any, segment: Union[str, int]) -> Any:
        """
        Move one segment deeper into a value.

        Args:
            current: Value being traversed
            segment: Field name or list index

        Returns:
            The nested value or the sentinel
        """
        if isinstance(current, (str, bytes, bytearray)):
            current = self._decode_json(current)
            if current is _MISSING:
                return _MISSING

        if isinstance(current, dict):
            if segment in current:
                return current[segment]
            if isinstance(segment, int) and str(segment) in current:
                return current[str(segment)]
            return _MISSING

        if isinstance(current, (list, tuple)):
            if isinstance(segment, str):
                if not segment.lstrip('-').isdigit():
                    return _MISSING
                segment = int(segment)
            if -len(current) <= segment < len(current):
                return current[segment]
            return _MISSING

        return _MISSING

    def _decode_json(self, raw: Union[str, bytes, bytearray]) -> Any:
        """Parse a JSON container held in a string; sentinel if it is not one."""
        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError):
            return _MISSING
        if isinstance(parsed, (dict, list)):
            return parsed
        return _MISSING


def extract_references(text: Any) -> List[str]:
    """
    Extract the base variable names referenced by ${...} tokens.

    Dot and index suffixes are stripped: '${user.name}' and '${user[0]}'
    both yield 'user'. Non-string values yield nothing.

    Args:
        text: Text to scan

    Returns:
        Base names in first-seen order, without duplicates
    """
    if not isinstance(text, str):
        return []
    names: List[str] = []
    for match in VariableSubstitutor.VAR_PATTERN.finditer(text):
        base = re.match(r'[^.\[\]]+', match.group(1).strip())
        if base and base.group(0) not in names:
            names.append(base.group(0))
    return names


def collect_references(value: Any) -> Set[str]:
    """Base names referenced anywhere inside a (possibly nested) value."""
    found: Set[str] = set()
    if isinstance(value, str):
        found.update(extract_references(value))
    elif isinstance(value, dict):
        for k, v in value.items():
            found |= collect_references(k)
            found |= collect_references(v)
    elif isinstance(value, (list, tuple)):
        for item in value:
            found |= collect_references(item)
    return found


def contains_reference(value: Any) -> bool:
    """True if a ${...} token appears anywhere inside value."""
    if isinstance(value, str):
        return VariableSubstitutor.VAR_PATTERN.search(value) is not None
    if isinstance(value, dict):
        return any(contains_reference(k) or contains_reference(v) for k, v in value.items())
    if isinstance(value, (list, tuple)):
        return any(contains_reference(item) for item in value)
    return False

