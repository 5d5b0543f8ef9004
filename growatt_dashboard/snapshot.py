"""Normalize raw Growatt payloads into the fixed dashboard shape."""
from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .const import (
    DEFAULT_INVERTER_MODEL,
    GRID_CONNECTED,
    GRID_OFF_GRID,
    OFF_GRID_AC_VOLTAGE,
    SECTION_BATTERY,
    SECTION_ENERGY,
    SECTION_GRID,
    SECTION_INVERTER,
    SECTION_LOAD,
    SECTION_PLANT,
    SECTION_PV,
    SECTIONS,
    SOURCE_ENERGY_OVERVIEW,
    SOURCE_PLANT_DETAIL,
    SOURCE_STORAGE_DETAIL,
    SOURCE_STORAGE_PARAMS,
)
from .growatt_api import as_iso, utcnow

_NUMBER_RE = re.compile(r"\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")

# Source names used by the field table
DETAIL = "detail"
ENERGY = "energy"
BEAN = "bean"
PLANT_DATA = "plant_data"


def parse_number(value: Any) -> float | None:
    """Parse a vendor value the lenient way, returning None when impossible.

    Strings are read up to the end of their leading decimal literal, so
    "51.2V" gives 51.2.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        raw = value
    elif isinstance(value, str):
        match = _NUMBER_RE.match(value)
        if not match:
            return None
        raw = match.group()
    else:
        return None
    try:
        number = float(raw)
    except OverflowError:
        return None
    # json.loads accepts NaN and Infinity
    if not math.isfinite(number):
        return None
    return number


def coalesce(*values: Any) -> float:
    """Return the first candidate that parses to a non-zero number, else 0.

    A genuine zero in an early candidate is indistinguishable from a missing
    field and falls through to the later candidates.
    """
    for value in values:
        number = parse_number(value)
        if number is not None and number != 0:
            return number
    return 0.0


def _parse_int(value: Any) -> int:
    number = parse_number(value)
    return int(number) if number is not None else 0


def _unwrap(payload: Any, key: str) -> dict[str, Any]:
    if not isinstance(payload, dict):
        return {}
    inner = payload.get(key)
    return inner if isinstance(inner, dict) else payload


def _mapping(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


@dataclass
class RawSources:
    """Upstream payloads for one refresh, as received."""

    detail: dict[str, Any] = field(default_factory=dict)
    energy: dict[str, Any] = field(default_factory=dict)
    params: dict[str, Any] = field(default_factory=dict)
    plant_detail: dict[str, Any] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SourceView:
    """Unwrapped upstream objects the field table reads from."""

    detail: dict[str, Any]
    energy: dict[str, Any]
    params: dict[str, Any]
    bean: dict[str, Any]
    storage_bean: dict[str, Any]
    plant_data: dict[str, Any]
    plant_detail: dict[str, Any]
    plant_name: str | None = None
    plant_id: str | None = None
    device_sn: str | None = None

    @classmethod
    def from_raw(
        cls,
        raw: RawSources,
        plant_name: str | None = None,
        plant_id: str | None = None,
        device_sn: str | None = None,
    ) -> SourceView:
        params = _unwrap(raw.params, "obj")
        plant_detail = _mapping(_mapping(raw.plant_detail).get("back"))
        return cls(
            detail=_unwrap(raw.detail, "obj"),
            energy=_unwrap(raw.energy, "obj"),
            params=params,
            bean=_mapping(params.get("storageDetailBean")),
            storage_bean=_mapping(params.get("storageBean")),
            plant_data=_mapping(plant_detail.get("plantData")),
            plant_detail=plant_detail,
            plant_name=plant_name,
            plant_id=plant_id,
            device_sn=device_sn,
        )

    def lookup(self, source: str, key: str) -> Any:
        return getattr(self, source).get(key)


@dataclass(frozen=True)
class SnapshotFieldDescription:
    """Describes one dashboard field.

    Numeric fields list their (source, raw field) candidates in priority
    order; everything else supplies a value_fn.
    """

    section: str
    key: str
    candidates: tuple[tuple[str, str], ...] = ()
    value_fn: Callable[[SourceView], Any] | None = None

    def value(self, view: SourceView) -> Any:
        if self.value_fn is not None:
            return self.value_fn(view)
        return coalesce(*(view.lookup(source, key) for source, key in self.candidates))


def _sd(key: str) -> tuple[str, str]:
    return (DETAIL, key)


def _en(key: str) -> tuple[str, str]:
    return (ENERGY, key)


def _bean(key: str) -> tuple[str, str]:
    return (BEAN, key)


def _pd(key: str) -> tuple[str, str]:
    return (PLANT_DATA, key)


def grid_status(view: SourceView) -> str:
    """Off-grid when the AC input is dead but the grid side reports voltage."""
    vac = parse_number(view.bean.get("vac"))
    v_grid = parse_number(view.detail.get("vGrid"))
    if vac is not None and vac < OFF_GRID_AC_VOLTAGE and v_grid is not None and v_grid > 0:
        return GRID_OFF_GRID
    return GRID_CONNECTED


def _inverter_status(view: SourceView) -> str:
    return (
        view.bean.get("SPF5000StatusText")
        or view.bean.get("statusText")
        or str(view.bean.get("status") or view.detail.get("status") or "")
    )


def _inverter_status_code(view: SourceView) -> int:
    return _parse_int(view.bean.get("status")) or _parse_int(view.detail.get("status")) or 0


PV_TODAY = (_sd("epvToday"), _en("epvToday"))
PV_TOTAL = (_sd("epvTotal"), _en("epvTotal"))

FIELD_DESCRIPTIONS: tuple[SnapshotFieldDescription, ...] = (
    # Plant
    SnapshotFieldDescription(
        SECTION_PLANT, "name", value_fn=lambda v: v.plant_name or v.plant_data.get("plantName")
    ),
    SnapshotFieldDescription(SECTION_PLANT, "id", value_fn=lambda v: v.plant_id),
    SnapshotFieldDescription(
        SECTION_PLANT,
        "currentPower",
        (_sd("activePower"), _sd("outPutPower"), _bean("outPutPower")),
    ),
    SnapshotFieldDescription(SECTION_PLANT, "todayEnergy", PV_TODAY),
    SnapshotFieldDescription(SECTION_PLANT, "monthEnergy", (_pd("monthEnergy"),)),
    SnapshotFieldDescription(SECTION_PLANT, "totalEnergy", (*PV_TOTAL, _pd("totalEnergy"))),
    # PV
    SnapshotFieldDescription(SECTION_PV, "power", (_sd("pCharge1"), _bean("ppv"))),
    SnapshotFieldDescription(SECTION_PV, "powerStr2", (_sd("pCharge2"), _bean("ppv2"))),
    SnapshotFieldDescription(SECTION_PV, "voltage", (_sd("vpv1"), _bean("vpv"))),
    SnapshotFieldDescription(SECTION_PV, "current", (_sd("iChargePV1"), _bean("iChargePV1"))),
    SnapshotFieldDescription(SECTION_PV, "todayEnergy", PV_TODAY),
    SnapshotFieldDescription(SECTION_PV, "totalEnergy", PV_TOTAL),
    # Battery
    SnapshotFieldDescription(SECTION_BATTERY, "soc", (_sd("capacity"), _bean("capacity"))),
    SnapshotFieldDescription(SECTION_BATTERY, "voltage", (_sd("vbat"), _bean("vBat"))),
    SnapshotFieldDescription(SECTION_BATTERY, "chargePower", (_sd("pCharge1"), _bean("pCharge"))),
    SnapshotFieldDescription(
        SECTION_BATTERY, "dischargePower", (_bean("pDischarge"), _bean("pBat"))
    ),
    SnapshotFieldDescription(SECTION_BATTERY, "dischargeCurrent", (_bean("dischgCurr"),)),
    SnapshotFieldDescription(
        SECTION_BATTERY, "chargeToday", (_sd("eBatChargeToday"), _en("eChargeToday"))
    ),
    SnapshotFieldDescription(
        SECTION_BATTERY, "dischargeToday", (_sd("eBatDisChargeToday"), _en("eDischargeToday"))
    ),
    SnapshotFieldDescription(
        SECTION_BATTERY, "temperature", (_bean("batTemp"), _bean("bmsTemperature"))
    ),
    # Load
    SnapshotFieldDescription(
        SECTION_LOAD, "power", (_sd("outPutPower"), _bean("outPutPower"), _bean("sysOut"))
    ),
    SnapshotFieldDescription(SECTION_LOAD, "current", (_bean("outPutCurrent"),)),
    SnapshotFieldDescription(SECTION_LOAD, "voltage", (_sd("outPutVolt"), _bean("outPutVolt"))),
    SnapshotFieldDescription(SECTION_LOAD, "frequency", (_sd("freqOutPut"), _bean("freqOutPut"))),
    SnapshotFieldDescription(
        SECTION_LOAD, "todayEnergy", (_en("useEnergyToday"), _en("eToUserToday"))
    ),
    SnapshotFieldDescription(SECTION_LOAD, "loadPercent", (_sd("loadPercent"), _bean("loadPercent"))),
    # Grid
    SnapshotFieldDescription(SECTION_GRID, "power", (_bean("pAcInPut"), _sd("pacToGrid"))),
    SnapshotFieldDescription(SECTION_GRID, "voltage", (_sd("vGrid"), _bean("vGrid"))),
    SnapshotFieldDescription(SECTION_GRID, "frequency", (_sd("freqGrid"), _bean("freqGrid"))),
    SnapshotFieldDescription(SECTION_GRID, "importToday", (_en("eToUserToday"),)),
    SnapshotFieldDescription(SECTION_GRID, "exportToday", (_en("eToGridToday"),)),
    SnapshotFieldDescription(SECTION_GRID, "status", value_fn=grid_status),
    # Inverter
    SnapshotFieldDescription(SECTION_INVERTER, "status", value_fn=_inverter_status),
    SnapshotFieldDescription(SECTION_INVERTER, "statusCode", value_fn=_inverter_status_code),
    SnapshotFieldDescription(SECTION_INVERTER, "temperature", (_bean("invTemperature"),)),
    SnapshotFieldDescription(SECTION_INVERTER, "dcDcTemperature", (_bean("dcDcTemperature"),)),
    SnapshotFieldDescription(
        SECTION_INVERTER,
        "model",
        value_fn=lambda v: v.params.get("storageType")
        or v.storage_bean.get("modelText")
        or DEFAULT_INVERTER_MODEL,
    ),
    SnapshotFieldDescription(SECTION_INVERTER, "serial", value_fn=lambda v: v.device_sn),
    SnapshotFieldDescription(
        SECTION_INVERTER,
        "alias",
        value_fn=lambda v: v.storage_bean.get("alias") or v.storage_bean.get("treeName") or "",
    ),
    SnapshotFieldDescription(
        SECTION_INVERTER, "firmware", value_fn=lambda v: v.storage_bean.get("fwVersion") or ""
    ),
    # Energy totals
    SnapshotFieldDescription(SECTION_ENERGY, "pvToday", PV_TODAY),
    SnapshotFieldDescription(SECTION_ENERGY, "pvTotal", PV_TOTAL),
    SnapshotFieldDescription(SECTION_ENERGY, "consumptionToday", (_en("useEnergyToday"),)),
    SnapshotFieldDescription(SECTION_ENERGY, "consumptionTotal", (_en("useEnergyTotal"),)),
    SnapshotFieldDescription(SECTION_ENERGY, "gridImportToday", (_en("eToUserToday"),)),
    SnapshotFieldDescription(SECTION_ENERGY, "gridImportTotal", (_en("eToUserTotal"),)),
    SnapshotFieldDescription(SECTION_ENERGY, "gridExportToday", (_en("eToGridToday"),)),
    SnapshotFieldDescription(SECTION_ENERGY, "gridExportTotal", (_en("eToGridTotal"),)),
    SnapshotFieldDescription(SECTION_ENERGY, "batteryChargeToday", (_en("eChargeToday"),)),
    SnapshotFieldDescription(SECTION_ENERGY, "batteryDischargeToday", (_en("eDischargeToday"),)),
    SnapshotFieldDescription(SECTION_ENERGY, "acChargeToday", (_bean("eacChargeToday"),)),
    SnapshotFieldDescription(SECTION_ENERGY, "acDischargeToday", (_bean("eacDisChargeToday"),)),
)


@dataclass(frozen=True)
class DashboardSnapshot:
    """One normalized refresh, cached and served as a whole."""

    timestamp: str
    sections: Mapping[str, dict[str, Any]]
    errors: Mapping[str, str] = field(default_factory=dict)
    raw: Mapping[str, Any] = field(default_factory=dict)

    def __getitem__(self, section: str) -> dict[str, Any]:
        return self.sections[section]

    def as_dict(self) -> dict[str, Any]:
        """Return a JSON-ready copy that callers are free to mutate."""
        data: dict[str, Any] = {"timestamp": self.timestamp}
        for section in SECTIONS:
            data[section] = copy.deepcopy(self.sections.get(section, {}))
        data["errors"] = dict(self.errors)
        data["_raw"] = copy.deepcopy(dict(self.raw))
        return data


def build_snapshot(
    raw: RawSources,
    *,
    plant_name: str | None = None,
    plant_id: str | None = None,
    device_sn: str | None = None,
    timestamp: datetime | None = None,
) -> DashboardSnapshot:
    """Map the raw upstream sources onto the dashboard sections."""
    view = SourceView.from_raw(raw, plant_name, plant_id, device_sn)
    sections: dict[str, dict[str, Any]] = {section: {} for section in SECTIONS}
    for description in FIELD_DESCRIPTIONS:
        sections[description.section][description.key] = description.value(view)

    return DashboardSnapshot(
        timestamp=as_iso(timestamp or utcnow()),
        sections=sections,
        errors=dict(raw.errors),
        raw={
            "storageDetail": view.detail,
            "energyOverview": view.energy,
            "storageDetailBean": view.bean,
            "storageBean": view.storage_bean,
            "plantDetail": view.plant_detail,
        },
    )


def _is_empty(value: Any) -> bool:
    if value is None or value in ("", "0", "0.0"):
        return True
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value == 0


def categorize_fields(obj: Any, label: str) -> dict[str, Any]:
    """Split a raw payload into populated and empty fields, sorted by name."""
    has_value: dict[str, Any] = {}
    empty: dict[str, Any] = {}
    for key, value in sorted(_mapping(obj).items()):
        if _is_empty(value):
            empty[key] = value
        else:
            has_value[key] = value
    return {"label": label, "hasValue": has_value, "empty": empty}


FIELD_REPORT_LABELS: Mapping[str, str] = {
    SOURCE_STORAGE_DETAIL: "Storage Detail (getStorageInfo_sacolar)",
    SOURCE_ENERGY_OVERVIEW: "Energy Overview (getEnergyOverviewData_sacolar)",
    SOURCE_STORAGE_PARAMS: "Storage Params (getStorageParams_sacolar)",
    SOURCE_PLANT_DETAIL: "Plant Detail (PlantDetailAPI)",
}


def field_report(raw: RawSources) -> dict[str, Any]:
    """Categorize every unwrapped upstream source for the fields diagnostic."""
    view = SourceView.from_raw(raw)
    return {
        SOURCE_STORAGE_DETAIL: categorize_fields(
            view.detail, FIELD_REPORT_LABELS[SOURCE_STORAGE_DETAIL]
        ),
        SOURCE_ENERGY_OVERVIEW: categorize_fields(
            view.energy, FIELD_REPORT_LABELS[SOURCE_ENERGY_OVERVIEW]
        ),
        SOURCE_STORAGE_PARAMS: categorize_fields(
            view.params, FIELD_REPORT_LABELS[SOURCE_STORAGE_PARAMS]
        ),
        SOURCE_PLANT_DETAIL: categorize_fields(
            view.plant_detail, FIELD_REPORT_LABELS[SOURCE_PLANT_DETAIL]
        ),
    }
