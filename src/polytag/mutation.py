"""Pure add/delete/modify/modadd operations over a ``TagModel``.

Every operation returns a new model and leaves its argument untouched, so
callers can preview a change or discard it without any undo bookkeeping.
"""

from __future__ import annotations

from collections.abc import Iterable

from polytag.errors import DuplicateFieldError, FieldNotFoundError, UnsupportedFeatureError
from polytag.fields import is_repeatable, untranslatable_reason
from polytag.model import Binary, NativeHint, TagEntry, TagModel, TagValue, normalize_identifier


def _checked_entry(
    model: TagModel, identifier: str, value: TagValue, hint: NativeHint | None
) -> TagEntry:
    ident = normalize_identifier(identifier)
    if not ident:
        raise ValueError("tag identifier must not be empty")
    entry = TagEntry(ident, value, hint)
    if isinstance(entry.value, list) and not entry.value:
        raise ValueError(f"no value given for {ident}")
    if reason := untranslatable_reason(model.native_format, entry):
        raise UnsupportedFeatureError(f"cannot store {ident} in {model.native_format}: {reason}")
    return entry


def add(
    model: TagModel, identifier: str, value: TagValue, hint: NativeHint | None = None
) -> TagModel:
    """Append an entry.

    Raises:
        DuplicateFieldError: If ``identifier`` is singular and already present
    """
    entry = _checked_entry(model, identifier, value, hint)
    if not is_repeatable(entry.identifier) and entry.identifier in model:
        raise DuplicateFieldError(entry.identifier)
    return model.with_entries([*model.entries, entry])


def delete(model: TagModel, identifiers: str | Iterable[str]) -> TagModel:
    """Remove every entry for the given identifiers; absent ones are ignored."""
    if isinstance(identifiers, str):
        identifiers = [identifiers]
    wanted = {normalize_identifier(i) for i in identifiers}
    if not any(e.identifier in wanted for e in model.entries):
        return model
    return model.with_entries(e for e in model.entries if e.identifier not in wanted)


def modify(model: TagModel, identifier: str, value: TagValue) -> TagModel:
    """Replace the value of a present field.

    The first matching entry keeps its position and native hint; any further
    entries for a repeatable identifier are removed.

    Raises:
        FieldNotFoundError: If ``identifier`` is absent
    """
    ident = normalize_identifier(identifier)
    current = model.get(ident)
    if current is None:
        raise FieldNotFoundError(ident)
    replacement = _checked_entry(model, ident, value, current.hint)

    entries: list[TagEntry] = []
    for entry in model.entries:
        if entry is current:
            entries.append(replacement)
        elif entry.identifier != ident:
            entries.append(entry)
    return model.with_entries(entries)


def modadd(model: TagModel, identifier: str, value: TagValue) -> TagModel:
    """``modify`` when present, ``add`` otherwise; never fails on absence."""
    if identifier in model:
        return modify(model, identifier, value)
    return add(model, identifier, value)


def clear(model: TagModel) -> TagModel:
    """Drop every entry. Unrecognized blocks are kept."""
    if not model.entries:
        return model
    return model.with_entries(())


def render_value(value: object) -> str:
    if isinstance(value, Binary):
        return f"<{value.mime or 'binary'}, {len(value.data)} bytes>"
    return str(value)


def output(model: TagModel, identifiers: Iterable[str] | None = None) -> list[tuple[str, str]]:
    """``(identifier, text)`` rows for display, one per value.

    With ``identifiers`` only those fields are listed, in the requested order.
    """
    if identifiers is None:
        selected = list(model.entries)
    else:
        selected = [e for i in identifiers for e in model.get_all(i)]
    return [(e.identifier, render_value(v)) for e in selected for v in e.values]
