"""
Design matrix and contrast construction.

The design is a group-means parameterization: one indicator column per
distinct `group` level, in first-appearance order. Contrasts are written
as arithmetic over group names, e.g.

    APAP_24h - Ctrl_24h
    (APAP_24h - Ctrl_24h) - (Vehicle_24h - Ctrl_24h)
    0.5*(APAP_6h + APAP_24h) - Ctrl_24h

Group names that are not plain identifiers can be quoted with backticks.
"""

import logging
import re
from typing import Dict, Iterable, List, Mapping, Sequence, Tuple, Union

import pandas as pd

from ..utils.errors import ContrastError
from ..utils.records import Contrast, DesignMatrix, SampleMetadata

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(
    r"\s*(?:"
    r"(?P<number>\d+\.?\d*(?:[eE][-+]?\d+)?|\.\d+)"
    r"|(?P<name>[A-Za-z_][A-Za-z0-9_.]*)"
    r"|`(?P<quoted>[^`]+)`"
    r"|(?P<op>[-+*/()])"
    r")"
)

# (constant term, {level: coefficient})
_Linear = Tuple[float, Dict[str, float]]


def build_design_matrix(metadata: SampleMetadata) -> DesignMatrix:
    """One 0/1 column per group level, rows in metadata sample order."""
    groups = metadata.groups
    levels = list(pd.unique(groups))
    matrix = pd.DataFrame(
        {level: (groups == level).astype(int).values for level in levels},
        index=pd.Index(metadata.sample_ids, name="sample_id"),
    )
    logger.info(f"Design matrix: {len(matrix)} samples x {len(levels)} groups")
    return DesignMatrix(matrix)


def _tokenize(expression: str) -> List[Tuple[str, str]]:
    tokens = []
    pos = 0
    text = expression.rstrip()
    while pos < len(text):
        match = TOKEN_PATTERN.match(text, pos)
        if not match or match.end() == pos:
            raise ContrastError(f"Cannot parse contrast '{expression}' at position {pos}")
        kind = match.lastgroup
        value = match.group(kind)
        tokens.append(("name" if kind == "quoted" else kind, value))
        pos = match.end()
    return tokens


class _ContrastParser:
    """Recursive-descent parser for linear expressions over group names."""

    def __init__(self, expression: str, levels: Sequence[str]):
        self.expression = expression
        self.levels = set(levels)
        self.tokens = _tokenize(expression)
        self.pos = 0

    def parse(self) -> Dict[str, float]:
        if not self.tokens:
            raise ContrastError("Empty contrast expression")
        constant, weights = self._expr()
        if self.pos != len(self.tokens):
            raise ContrastError(f"Unexpected '{self.tokens[self.pos][1]}' in contrast '{self.expression}'")
        if abs(constant) > 1e-12:
            raise ContrastError(f"Contrast '{self.expression}' has a constant term")
        weights = {k: v for k, v in weights.items() if abs(v) > 1e-12}
        if not weights:
            raise ContrastError(f"Contrast '{self.expression}' has no non-zero coefficients")
        return weights

    def _peek(self) -> Tuple[str, str]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else ("end", "")

    def _take(self) -> Tuple[str, str]:
        token = self._peek()
        self.pos += 1
        return token

    def _expr(self) -> _Linear:
        left = self._term()
        while self._peek() in (("op", "+"), ("op", "-")):
            sign = 1.0 if self._take()[1] == "+" else -1.0
            right = self._term()
            left = _add(left, right, sign)
        return left

    def _term(self) -> _Linear:
        left = self._factor()
        while self._peek() in (("op", "*"), ("op", "/")):
            op = self._take()[1]
            right = self._factor()
            if op == "*":
                if not left[1]:
                    left = _scale(right, left[0])
                elif not right[1]:
                    left = _scale(left, right[0])
                else:
                    raise ContrastError(f"Product of two groups in contrast '{self.expression}'")
            else:
                if right[1]:
                    raise ContrastError(f"Division by a group in contrast '{self.expression}'")
                if right[0] == 0:
                    raise ContrastError(f"Division by zero in contrast '{self.expression}'")
                left = _scale(left, 1.0 / right[0])
        return left

    def _factor(self) -> _Linear:
        kind, value = self._take()
        if (kind, value) == ("op", "-"):
            return _scale(self._factor(), -1.0)
        if (kind, value) == ("op", "+"):
            return self._factor()
        if kind == "number":
            return float(value), {}
        if kind == "name":
            if value not in self.levels:
                raise ContrastError(
                    f"Contrast '{self.expression}' references unknown group '{value}'"
                )
            return 0.0, {value: 1.0}
        if (kind, value) == ("op", "("):
            inner = self._expr()
            if self._take() != ("op", ")"):
                raise ContrastError(f"Unbalanced parentheses in contrast '{self.expression}'")
            return inner
        raise ContrastError(f"Unexpected '{value or 'end of input'}' in contrast '{self.expression}'")


def _add(left: _Linear, right: _Linear, sign: float) -> _Linear:
    weights = dict(left[1])
    for level, coef in right[1].items():
        weights[level] = weights.get(level, 0.0) + sign * coef
    return left[0] + sign * right[0], weights


def _scale(value: _Linear, factor: float) -> _Linear:
    return value[0] * factor, {k: v * factor for k, v in value[1].items()}


def parse_contrast(name: str, expression: str, levels: Sequence[str]) -> Contrast:
    """Parse one contrast expression into level weights."""
    if not str(name).strip():
        raise ContrastError("Contrast names must be non-empty")
    weights = _ContrastParser(expression, levels).parse()
    return Contrast(name=str(name), expression=expression, weights=weights)


def make_contrasts(
    definitions: Union[Mapping[str, str], Iterable[Mapping[str, str]]],
    levels: Sequence[str],
) -> List[Contrast]:
    """
    Build all contrasts for a study.

    Args:
        definitions: {name: expression}, or a list of {"name", "expression"}
            records (the list form is how duplicate names can even occur)
        levels: Design matrix columns

    Raises:
        ContrastError: malformed expression, unknown group or duplicate name
    """
    if isinstance(definitions, Mapping):
        pairs = list(definitions.items())
    else:
        pairs = [(d["name"], d["expression"]) for d in definitions]

    seen = set()
    contrasts = []
    for name, expression in pairs:
        if name in seen:
            raise ContrastError(f"Duplicate contrast name: '{name}'")
        seen.add(name)
        contrasts.append(parse_contrast(name, expression, levels))

    if not contrasts:
        raise ContrastError("No contrasts defined")
    return contrasts


def default_contrasts(levels: Sequence[str], control_group: str) -> Dict[str, str]:
    """Every other group against the control group."""
    if control_group not in levels:
        raise ContrastError(f"Control group '{control_group}' not among groups {list(levels)}")
    return {
        f"{level}_vs_{control_group}": f"`{level}` - `{control_group}`"
        for level in levels if level != control_group
    }


def contrast_matrix(contrasts: Sequence[Contrast], levels: Sequence[str]) -> pd.DataFrame:
    """Levels x contrasts coefficient matrix."""
    return pd.DataFrame(
        {c.name: c.vector(levels) for c in contrasts},
        index=pd.Index(list(levels), name="level"),
    )


def contrasts_from_frame(frame: pd.DataFrame, levels: Sequence[str]) -> List[Contrast]:
    """Rebuild contrasts from the `name, expression` table written by the design stage."""
    return make_contrasts(frame[["name", "expression"]].to_dict("records"), levels)
