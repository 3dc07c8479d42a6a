"""
Experiment store catalog.

Single source of truth for the experiment table: its SQLAlchemy Table
definition (used by the pattern aggregator, the similarity scorer and the
SQLite-backed tests), the alias table used to canonicalize identifiers in
proposer output, and the fixed column groups other components rely on.

Column names are camelCase and must be double-quoted in PostgreSQL.
"""

from typing import Dict, List, Tuple

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)

TABLE_NAME = "Experiment"
QUOTED_TABLE = f'"{TABLE_NAME}"'

metadata = MetaData()

experiment_table = Table(
    TABLE_NAME,
    metadata,
    Column("id", String, primary_key=True),
    Column("experimentId", String, index=True),
    Column("testName", Text),
    Column("vertical", String),
    Column("geo", String),
    Column("brand", String),
    Column("audience", String),
    Column("tradingHub", String),
    Column("masterLever", String),
    Column("lever", String),
    Column("userJourneyType", String),
    Column("targetMetric", String),
    Column("monetisationMethod", String),
    Column("changeType", String),
    Column("elementChanged", String),
    Column("hypothesis", Text),
    Column("lessonLearned", Text),
    Column("winningVar", String),
    Column("monthlyExtrap", Float),
    Column("observedRevenueImpact", Float),
    Column("launchedBy", String),
    Column("dateLaunched", DateTime),
    Column("dateConcluded", DateTime),
    Column("variationsCount", Integer),
    Column("baseUrl", Text),
    Column("optimizelyLink", Text),
    Column("mobileTrafficPct", Float),
    Column("visitsControl", Integer),
    Column("visitsVar1", Integer),
    Column("visitsVar2", Integer),
    Column("visitsVar3", Integer),
    Column("totalVisits", Integer),
    Column("primaryMetricName", String),
    Column("primaryControlConv", Float),
    Column("primaryVar1Conv", Float),
    Column("primaryVar2Conv", Float),
    Column("primaryVar3Conv", Float),
    Column("primarySignificance1", Float),
    Column("secondaryMetricName", String),
    Column("secondaryControlConv", Float),
    Column("secondaryVar1Conv", Float),
    Column("secondaryVar2Conv", Float),
    Column("secondaryVar3Conv", Float),
    Column("tertiaryMetricName", String),
    Column("tertiaryControlConv", Float),
    Column("tertiaryVar1Conv", Float),
    Column("tertiaryVar2Conv", Float),
    Column("tertiaryVar3Conv", Float),
    Column("crChangeV1", Float),
    Column("crChangeV2", Float),
    Column("crChangeV3", Float),
    Column("rpvChangeV1", Float),
    Column("rpvChangeV2", Float),
    Column("rpvChangeV3", Float),
    Column("promoted", Boolean),
)


def _quote(name: str) -> str:
    return f'"{name}"'


# Lower-cased alias -> canonical quoted identifier. Every camelCase column
# maps from its lower-cased spelling; a few generic words map onto the
# column they usually mean in proposer output.
_CAMEL_COLUMNS = [
    c.name for c in experiment_table.columns if c.name != c.name.lower()
]

COLUMN_ALIASES: Dict[str, str] = {name.lower(): _quote(name) for name in _CAMEL_COLUMNS}
COLUMN_ALIASES.update({
    "monetizationmethod": _quote("monetisationMethod"),
    "metrics": _quote("primaryMetricName"),
    "uuid": _quote("id"),
    "owner": _quote("launchedBy"),
    "ownername": _quote("launchedBy"),
})

TABLE_ALIASES: Dict[str, str] = {
    "experiment": QUOTED_TABLE,
    "experiments": QUOTED_TABLE,
}

# Categorical attributes whose stored spelling varies ("Solar" vs
# "Solar Panels"), so equality filters on them are loosened to ILIKE.
LOOSE_MATCH_COLUMNS: Tuple[str, ...] = ("vertical", "geo", "tradingHub")

# The relationship pair aggregated by the pattern aggregator.
PATTERN_PAIR: Tuple[str, str] = ("changeType", "elementChanged")

# Columns a plain row selection must carry when it stands in for a pattern answer.
REQUIRED_PATTERN_COLUMNS: List[str] = [
    "changeType",
    "elementChanged",
    "testName",
    "vertical",
    "geo",
    "winningVar",
    "monthlyExtrap",
    "dateConcluded",
]

# Attributes compared by the similarity scorer, in scoring order.
COMPARABLE_ATTRIBUTES: List[str] = [
    "changeType",
    "elementChanged",
    "vertical",
    "geo",
    "brand",
    "targetMetric",
]

PERSON_COLUMN = "launchedBy"
NAME_COLUMN = "testName"
OUTCOME_COLUMN = "winningVar"
IMPACT_COLUMN = "monthlyExtrap"
CONCLUDED_COLUMN = "dateConcluded"
LAUNCHED_COLUMN = "dateLaunched"
LEARNING_COLUMN = "lessonLearned"

KNOWN_VERTICALS: Dict[str, str] = {
    "solar": "Solar",
    "hearing": "Hearing",
    "merchant": "Merchant",
    "heat pump": "Heat Pump",
    "boiler": "Boiler",
    "window": "Window",
    "insulation": "Insulation",
    "charger": "Charger",
}

KNOWN_GEOS: List[str] = ["UK", "US", "DK", "DE", "AU", "NZ", "CA"]


def describe_schema() -> str:
    """Schema description handed to the proposer prompt."""
    columns = ", ".join(c.name for c in experiment_table.columns)
    return (
        f'Table {QUOTED_TABLE} (PostgreSQL, camelCase columns MUST be double-quoted).\n'
        f"Columns: {columns}.\n"
        f'"winningVar" is NULL or empty when the experiment did not produce a winner.\n'
        f'"monthlyExtrap" is the extrapolated monthly revenue impact.'
    )
