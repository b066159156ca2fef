# menustore/addon_selection.py
"""
Enforce add-on limits while a customer assembles an item.

A group dict looks like the live read model returns it:
  {id, name, required, multiple_choice, max_group_select, max_option_quantity,
   options: [{id, name, available, ...}, ...]}

A selection is {group_id: {option_id: quantity}}.

Caps: None means unlimited; exactly 0 makes the group inert (nothing can be
picked and ``required`` is not enforced).
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

Quantities = Dict[str, int]

REQUIRED = "REQUIRED"
MAX_GROUP_SELECT = "MAX_GROUP_SELECT"
MAX_OPTION_QUANTITY = "MAX_OPTION_QUANTITY"
UNKNOWN_GROUP = "UNKNOWN_GROUP"
UNKNOWN_OPTION = "UNKNOWN_OPTION"
OPTION_UNAVAILABLE = "OPTION_UNAVAILABLE"
INVALID_QUANTITY = "INVALID_QUANTITY"


class SelectionLimitError(ValueError):
    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


# ------------------------------------------------------------
# Flag / cap coercion
# ------------------------------------------------------------
def as_bool(v: Any) -> bool:
    """Tolerates "true"/"false" strings coming from serialized props."""
    if isinstance(v, str):
        return v.strip().lower() in ("true", "1", "yes", "on")
    return bool(v)


def as_cap(v: Any) -> Optional[int]:
    if v is None or isinstance(v, bool):
        return None
    try:
        n = int(v)
    except (TypeError, ValueError):
        return None
    return n if n >= 0 else None


def effective_group_max(group: Dict[str, Any]) -> Optional[int]:
    explicit = as_cap(group.get("max_group_select"))
    if explicit is not None:
        return explicit
    return None if as_bool(group.get("multiple_choice")) else 1


def effective_option_max(group: Dict[str, Any]) -> Optional[int]:
    cap = as_cap(group.get("max_option_quantity"))
    if as_bool(group.get("multiple_choice")):
        return cap
    return 1 if cap is None else min(cap, 1)


def is_inert(group: Dict[str, Any]) -> bool:
    return effective_group_max(group) == 0 or effective_option_max(group) == 0


def _options(group: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    return {str(o["id"]): o for o in group.get("options") or [] if o.get("id") is not None}


def _selected(quantities: Optional[Dict[Any, Any]]) -> Quantities:
    out: Quantities = {}
    for oid, q in (quantities or {}).items():
        n = int(q)
        if n > 0:
            out[str(oid)] = n
    return out


def _error(group_id: Any, option_id: Any, code: str, message: str) -> Dict[str, Any]:
    return {
        "group_id": None if group_id is None else str(group_id),
        "option_id": None if option_id is None else str(option_id),
        "code": code,
        "message": message,
    }


# ------------------------------------------------------------
# Whole-selection validation
# ------------------------------------------------------------
def validate_selection(groups: List[Dict[str, Any]], selection: Dict[Any, Any]) -> List[Dict[str, Any]]:
    """Every limit violation in ``selection``; an empty list means it can be ordered."""
    errors: List[Dict[str, Any]] = []
    selection = selection or {}
    known = {str(g["id"]) for g in groups}

    for gid in selection:
        if str(gid) not in known:
            errors.append(_error(gid, None, UNKNOWN_GROUP, "Unknown add-on group"))

    raw_by_group = {str(k): v for k, v in selection.items()}
    for g in groups:
        gid = str(g["id"])
        name = g.get("name") or gid
        raw = raw_by_group.get(gid) or {}
        if not isinstance(raw, dict):
            errors.append(_error(gid, None, INVALID_QUANTITY, f"{name}: selection must be an object"))
            continue
        try:
            picked = _selected(raw)
        except (TypeError, ValueError):
            errors.append(_error(gid, None, INVALID_QUANTITY, f"{name}: quantities must be integers"))
            continue

        if is_inert(g):
            for oid in picked:
                errors.append(_error(gid, oid, MAX_GROUP_SELECT, f"{name}: no options can be selected"))
            continue

        opts = _options(g)
        for oid in picked:
            opt = opts.get(oid)
            if opt is None:
                errors.append(_error(gid, oid, UNKNOWN_OPTION, f"{name}: unknown option"))
            elif "available" in opt and opt["available"] is not None and not as_bool(opt["available"]):
                errors.append(_error(gid, oid, OPTION_UNAVAILABLE, f"{name}: {opt.get('name')} is unavailable"))

        if as_bool(g.get("required")) and not picked:
            errors.append(_error(gid, None, REQUIRED, f"{name} is required"))

        gmax = effective_group_max(g)
        if gmax is not None and len(picked) > gmax:
            errors.append(_error(gid, None, MAX_GROUP_SELECT, f"{name}: pick at most {gmax}"))

        omax = effective_option_max(g)
        if omax is not None:
            for oid, n in picked.items():
                if n > omax:
                    errors.append(_error(gid, oid, MAX_OPTION_QUANTITY, f"{name}: at most {omax} of each option"))

    return errors


# ------------------------------------------------------------
# Interactive updates (return a new quantities dict)
# ------------------------------------------------------------
def _check_pickable(group: Dict[str, Any], option_id: str) -> None:
    if is_inert(group):
        raise SelectionLimitError(MAX_GROUP_SELECT, "No options can be selected in this group")
    opt = _options(group).get(option_id)
    if opt is None:
        raise SelectionLimitError(UNKNOWN_OPTION, f"Unknown option {option_id}")
    if "available" in opt and opt["available"] is not None and not as_bool(opt["available"]):
        raise SelectionLimitError(OPTION_UNAVAILABLE, f"{opt.get('name') or option_id} is unavailable")


def select_option(group: Dict[str, Any], quantities: Optional[Dict[Any, Any]], option_id: Any) -> Quantities:
    """Single-choice pick: the chosen option becomes 1, every other option 0."""
    oid = str(option_id)
    _check_pickable(group, oid)
    out: Quantities = {str(k): 0 for k in (quantities or {})}
    for k in _options(group):
        out[k] = 0
    out[oid] = 1
    return out


def change_quantity(
    group: Dict[str, Any],
    quantities: Optional[Dict[Any, Any]],
    option_id: Any,
    delta: int,
) -> Quantities:
    """
    Step one option's counter by ``delta``.

    Decreases always succeed (floored at 0).  An increase is refused with
    SelectionLimitError when it would pass the option cap, or when it would
    add a new distinct option to a group already at its cap.
    """
    oid = str(option_id)
    out: Quantities = {str(k): int(v) for k, v in (quantities or {}).items()}
    current = out.get(oid, 0)
    if delta <= 0:
        out[oid] = max(0, current + int(delta))
        return out

    if not as_bool(group.get("multiple_choice")):
        return select_option(group, out, oid)

    _check_pickable(group, oid)
    new = current + int(delta)

    omax = effective_option_max(group)
    if omax is not None and new > omax:
        raise SelectionLimitError(MAX_OPTION_QUANTITY, f"At most {omax} of this option")

    gmax = effective_group_max(group)
    if current == 0 and gmax is not None:
        distinct = sum(1 for n in out.values() if n > 0)
        if distinct >= gmax:
            raise SelectionLimitError(MAX_GROUP_SELECT, f"Pick at most {gmax} options")

    out[oid] = new
    return out
