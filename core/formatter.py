"""Resolve ``{token}`` placeholders of computed fields."""

from __future__ import annotations

import re
from typing import Mapping, Sequence

from core.a1 import normalize_cell
from core.field_schema import FieldDefinition

__all__ = ["TOKEN_RE", "format_computed"]

TOKEN_RE = re.compile(r"\{([^}]+)\}")


def _lookup(token: str, params: Mapping[str, str], fields: Sequence[FieldDefinition]) -> str:
    if token in params:
        return str(params[token] or "")
    cell = normalize_cell(token)
    for definition in fields:
        if definition.cell and definition.cell == cell:
            return str(params.get(definition.key) or "")
    return ""


def format_computed(template: str, params: Mapping[str, str], fields: Sequence[FieldDefinition]) -> str:
    """Substitute each ``{token}`` in ``template``.

    A token naming a key of ``params`` is replaced by that value.  Otherwise it
    is read as a cell address (``$`` anchors ignored, case-insensitive) and
    the value of the field bound to that cell is used.  Anything unresolved
    becomes an empty string.

    >>> fields = [FieldDefinition(label="Merk", cell="B1"), FieldDefinition(label="Tipe", cell="D1")]
    >>> format_computed("{B1} - {$d$1}", {"merk": "X", "tipe": "Y"}, fields)
    'X - Y'
    """

    if not template:
        return ""
    return TOKEN_RE.sub(lambda match: _lookup(match.group(1).strip(), params, fields), template)
