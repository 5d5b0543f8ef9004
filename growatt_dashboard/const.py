"""Constants for the Growatt cloud dashboard proxy."""
from datetime import timedelta
from typing import Final

# Configuration keys (environment variable names)
CONF_USERNAME: Final = "GROWATT_USERNAME"
CONF_PASSWORD: Final = "GROWATT_PASSWORD"
CONF_BASE_URL: Final = "GROWATT_BASE_URL"
CONF_HOST: Final = "HOST"
CONF_PORT: Final = "PORT"
CONF_LOG_LEVEL: Final = "LOG_LEVEL"
CONF_REQUEST_TIMEOUT: Final = "REQUEST_TIMEOUT"

# Defaults
DEFAULT_BASE_URL: Final = "https://openapi.growatt.com"
DEFAULT_HOST: Final = "0.0.0.0"
DEFAULT_PORT: Final = 3000
DEFAULT_LOG_LEVEL: Final = "DEBUG"
DEFAULT_TIMEOUT: Final = 30

LOG_LEVELS: Final = ("DEBUG", "INFO", "WARN", "WARNING", "ERROR")

# Growatt's CDN blacklists the Dalvik/automation agents, so look like a phone browser
USER_AGENT: Final = (
    "Mozilla/5.0 (Linux; Android 12; SM-G991B) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36"
)

SESSION_TTL: Final = timedelta(minutes=30)
DATA_CACHE_TTL: Final = timedelta(seconds=60)

# API Endpoints
LOGIN_ENDPOINT: Final = "newTwoLoginAPI.do"
PLANT_API_ENDPOINT: Final = "newTwoPlantAPI.do"
STORAGE_API_ENDPOINT: Final = "newStorageAPI.do"
PLANT_DETAIL_ENDPOINT: Final = "PlantDetailAPI.do"

OP_DEVICE_LIST_TWO: Final = "getAllDeviceListTwo"
OP_DEVICE_LIST: Final = "getAllDeviceList"
OP_STORAGE_INFO: Final = "getStorageInfo_sacolar"
OP_ENERGY_OVERVIEW: Final = "getEnergyOverviewData_sacolar"
OP_STORAGE_PARAMS: Final = "getStorageParams_sacolar"

# Truncated JSON salvage
SALVAGE_ROUNDS: Final = 10
SALVAGE_SUFFIXES: Final = ("}", "}}", "}}}", "}}}}", "]}", "]}}")

# Upstream source labels
SOURCE_STORAGE_DETAIL: Final = "storageDetail"
SOURCE_ENERGY_OVERVIEW: Final = "energyOverview"
SOURCE_STORAGE_PARAMS: Final = "storageParams"
SOURCE_PLANT_DETAIL: Final = "plantDetail"

# Dashboard sections, in response order
SECTION_PLANT: Final = "plant"
SECTION_PV: Final = "pv"
SECTION_BATTERY: Final = "battery"
SECTION_LOAD: Final = "load"
SECTION_GRID: Final = "grid"
SECTION_INVERTER: Final = "inverter"
SECTION_ENERGY: Final = "energy"

SECTIONS: Final = (
    SECTION_PLANT,
    SECTION_PV,
    SECTION_BATTERY,
    SECTION_LOAD,
    SECTION_GRID,
    SECTION_INVERTER,
    SECTION_ENERGY,
)

GRID_CONNECTED: Final = "connected"
GRID_OFF_GRID: Final = "off-grid"
OFF_GRID_AC_VOLTAGE: Final = 50

DEFAULT_INVERTER_MODEL: Final = "SPF 5000ES"
