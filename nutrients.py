"""
Nutrient formulations and the mg/L concentration calculator.

Each formulation lists its elements as percent by weight. A dose of
``g`` grams dissolved in ``v`` liters contributes
``g * pct / 100 * 1000 / v`` mg/L of every element it carries; the
contributions of all products are summed per element.
"""
from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Mapping, Optional, Tuple

from openpyxl import load_workbook

log = logging.getLogger("backend.nutrients")


@dataclass(frozen=True)
class NutrientFormulation:
    key: str                      # dose field that carries the grams for this product
    name: str
    formula: str
    elements: Tuple[Tuple[str, float], ...]

    def percentages(self) -> Dict[str, float]:
        return dict(self.elements)

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "name": self.name, "formula": self.formula, "elements": self.percentages()}


MASTERBLEND = NutrientFormulation(
    key="masterblend",
    name="Masterblend 4-18-38",
    formula="C12H22O11",
    elements=(
        ("N", 4.0),       # total nitrogen
        ("N-NO3", 3.5),
        ("N-NH4", 0.5),
        ("P2O5", 18.0),
        ("P", 7.86),      # P2O5 x 0.437
        ("K2O", 38.0),
        ("K", 31.54),     # K2O x 0.83
        ("B", 0.02),
        ("Cu", 0.05),
        ("Fe", 0.40),
        ("Mn", 0.20),
        ("Mo", 0.01),
        ("Zn", 0.05),
    ),
)

CALCIUM_NITRATE = NutrientFormulation(
    key="calciumNitrate",
    name="Calcium Nitrate",
    formula="Ca(NO3)2",
    elements=(
        ("N", 15.5),
        ("N-NO3", 14.4),
        ("N-NH4", 1.1),
        ("Ca", 19.0),
        ("CaO", 26.5),
    ),
)

MAGNESIUM_SULFATE = NutrientFormulation(
    key="magnesiumSulfate",
    name="Magnesium Sulfate",
    formula="MgSO4·7H2O",
    elements=(
        ("MgO", 16.0),
        ("Mg", 9.6),
        ("SO3", 32.5),
        ("S", 13.0),
    ),
)

FORMULATIONS: Tuple[NutrientFormulation, ...] = (MASTERBLEND, CALCIUM_NITRATE, MAGNESIUM_SULFATE)


def element_symbols(table: Optional[Tuple[NutrientFormulation, ...]] = None) -> List[str]:
    """Every element symbol carried by at least one formulation, in first-seen order."""
    seen: List[str] = []
    for formulation in table or FORMULATIONS:
        for symbol, _ in formulation.elements:
            if symbol not in seen:
                seen.append(symbol)
    return seen


def calculate_concentrations(
    doses: Mapping[str, Any],
    total_volume: Optional[float],
    table: Optional[Tuple[NutrientFormulation, ...]] = None,
) -> Dict[str, float]:
    """Return mg/L per element for the given doses (grams, keyed by formulation key).

    A missing, zero, negative or non-finite volume yields an empty mapping.
    """
    if total_volume is None:
        return {}
    try:
        volume = float(total_volume)
    except (TypeError, ValueError):
        return {}
    if not math.isfinite(volume) or volume <= 0:
        return {}

    concentrations: Dict[str, float] = {}
    for formulation in table or FORMULATIONS:
        amount = float(doses.get(formulation.key) or 0.0)
        for symbol, percent in formulation.elements:
            grams = amount * percent / 100.0
            concentrations[symbol] = concentrations.get(symbol, 0.0) + grams * 1000.0 / volume
    return concentrations


# ----------------- Workbook overrides -----------------
def _percent(cell: Any) -> Optional[float]:
    if cell is None:
        return None
    s = str(cell).strip().rstrip("%").strip()
    if s == "":
        return None
    return float(s)


def load_formulation_workbook(
    path: str, table: Optional[Tuple[NutrientFormulation, ...]] = None
) -> Tuple[NutrientFormulation, ...]:
    """Return ``table`` with element percentages replaced from an .xlsx sheet.

    Row 1 holds the headers: one product/key/name column, every other
    non-empty header is an element symbol.
    """
    base = table or FORMULATIONS
    if not os.path.exists(path):
        raise FileNotFoundError(path)
    wb = load_workbook(filename=path, data_only=True)
    ws = wb[wb.sheetnames[0]]
    rows = list(ws.iter_rows(values_only=True))
    if not rows or len(rows) < 2:
        return base
    headers = [str(h).strip() if h is not None else "" for h in rows[0]]

    i_name = None
    for k in ("product", "key", "name"):
        for i, h in enumerate(headers):
            if k in h.lower():
                i_name = i
                break
        if i_name is not None:
            break
    if i_name is None:
        raise ValueError("Workbook headers missing a product column. Found: " + str(headers))

    by_label: Dict[str, NutrientFormulation] = {}
    for f in base:
        by_label[f.key.lower()] = f
        by_label[f.name.lower()] = f

    overrides: Dict[str, NutrientFormulation] = {}
    for r in rows[1:]:
        try:
            if r[i_name] is None:
                continue
            label = str(r[i_name]).strip().lower()
            formulation = by_label.get(label)
            if formulation is None:
                log.warning("[FORMULATIONS] skipping unknown product %r", r[i_name])
                continue
            elements = []
            for i, symbol in enumerate(headers):
                if i == i_name or not symbol or i >= len(r):
                    continue
                pct = _percent(r[i])
                if pct is not None:
                    elements.append((symbol, pct))
            overrides[formulation.key] = replace(formulation, elements=tuple(elements))
        except (TypeError, ValueError) as e:
            log.warning("[FORMULATIONS] skipping row (parse error): %s -> %s", r, e)
            continue
    return tuple(overrides.get(f.key, f) for f in base)
