"""
Department to region mapping and zone classification.

A Geography is an immutable value passed to the components that need it
(collection phase, reports). The default table covers French metropolitan
and overseas departments; tests and deployments can supply their own.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional

import yaml

from ._types import ZoneType
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

UNKNOWN_REGION = "Unknown region"

_REGIONS: dict[str, tuple[str, ...]] = {
    "Auvergne-Rhône-Alpes": ("01", "03", "07", "15", "26", "38", "42", "43", "63", "69", "73", "74"),
    "Bourgogne-Franche-Comté": ("21", "25", "39", "58", "70", "71", "89", "90"),
    "Bretagne": ("22", "29", "35", "56"),
    "Centre-Val de Loire": ("18", "28", "36", "37", "41", "45"),
    "Corse": ("2A", "2B"),
    "Grand Est": ("08", "10", "51", "52", "54", "55", "57", "67", "68", "88"),
    "Hauts-de-France": ("02", "59", "60", "62", "80"),
    "Île-de-France": ("75", "77", "78", "91", "92", "93", "94", "95"),
    "Normandie": ("14", "27", "50", "61", "76"),
    "Nouvelle-Aquitaine": ("16", "17", "19", "23", "24", "33", "40", "47", "64", "79", "86", "87"),
    "Occitanie": ("09", "11", "12", "30", "31", "32", "34", "46", "48", "65", "66", "81", "82"),
    "Pays de la Loire": ("44", "49", "53", "72", "85"),
    "Provence-Alpes-Côte d'Azur": ("04", "05", "06", "13", "83", "84"),
    "Guadeloupe": ("971",),
    "Martinique": ("972",),
    "Guyane": ("973",),
    "La Réunion": ("974",),
    "Saint-Pierre-et-Miquelon": ("975",),
    "Mayotte": ("976",),
}

DEFAULT_DEPARTMENT_REGIONS: Mapping[str, str] = MappingProxyType({
    code: region for region, codes in _REGIONS.items() for code in codes
})

# Departments scanned when no explicit list is configured
ALL_DEPARTMENTS: tuple[str, ...] = (
    *(f"{i:02d}" for i in range(1, 96) if i != 20),
    "2A", "2B", "971", "972", "973", "974", "975", "976",
)

DEFAULT_URBAN_CITIES: frozenset[str] = frozenset({
    "PARIS", "LYON", "MARSEILLE", "TOULOUSE", "NICE", "NANTES",
    "STRASBOURG", "MONTPELLIER", "BORDEAUX", "LILLE", "RENNES",
    "REIMS", "SAINT-ÉTIENNE", "TOULON", "ANGERS", "GRENOBLE",
    "DIJON", "NÎMES", "AIX-EN-PROVENCE", "BREST", "LIMOGES", "TOURS",
    "AMIENS", "PERPIGNAN", "BOULOGNE-BILLANCOURT", "METZ", "BESANÇON",
    "ORLÉANS", "MULHOUSE", "ROUEN", "SAINT-DENIS", "MONTREUIL",
    "ARGENTEUIL", "CAEN", "NANCY", "TOURCOING", "ROUBAIX",
})

_RURAL_WORDS = re.compile(r"\b(VILLAGE|HAMEAU|BOURG)\b")


@dataclass(frozen=True)
class Geography:
    """Immutable department/region table plus zone classification rules."""

    department_regions: Mapping[str, str] = field(default_factory=lambda: DEFAULT_DEPARTMENT_REGIONS)
    urban_cities: frozenset[str] = DEFAULT_URBAN_CITIES
    urban_population: int = 100_000
    rural_population: int = 2_000
    unknown_region: str = UNKNOWN_REGION
    departments: tuple[str, ...] = field(default=ALL_DEPARTMENTS)

    def __post_init__(self) -> None:
        # Freeze caller-supplied dicts so the table cannot drift at runtime
        if not isinstance(self.department_regions, MappingProxyType):
            object.__setattr__(
                self, "department_regions", MappingProxyType(dict(self.department_regions))
            )

    @classmethod
    def from_mapping(cls, department_regions: Mapping[str, str], **kwargs) -> "Geography":
        """Build a geography from a plain department -> region mapping."""
        kwargs.setdefault("departments", tuple(department_regions))
        return cls(department_regions=dict(department_regions), **kwargs)

    @classmethod
    def from_yaml(cls, path: Path) -> "Geography":
        """
        Load a geography from YAML.

        Expected layout::

            regions:
              Normandie: ["14", "27", "50", "61", "76"]
            urban_cities: [ROUEN, CAEN]
        """
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot load geography from {path}", original_error=e)

        regions = data.get("regions")
        if not isinstance(regions, dict) or not regions:
            raise ConfigurationError(f"Geography file {path} has no 'regions' table")

        mapping = {str(code): region for region, codes in regions.items() for code in codes}
        kwargs = {}
        if "urban_cities" in data:
            kwargs["urban_cities"] = frozenset(c.upper() for c in data["urban_cities"])
        if "departments" in data:
            kwargs["departments"] = tuple(str(d) for d in data["departments"])

        logger.info(f"Loaded geography with {len(mapping)} departments from {path}")
        return cls.from_mapping(mapping, **kwargs)

    def region_for(self, department: Optional[str]) -> str:
        """Region name for a department code, or the unknown-region label."""
        if not department:
            return self.unknown_region
        return self.department_regions.get(department, self.unknown_region)

    def classify_zone(self, city: str, population: Optional[int] = None) -> ZoneType:
        """Classify a site as urban, semi-urban, rural or unknown."""
        if population is not None:
            if population > self.urban_population:
                return ZoneType.URBAN
            if population < self.rural_population:
                return ZoneType.RURAL
            return ZoneType.SEMI_URBAN

        name = (city or "").upper()
        if not name:
            return ZoneType.UNKNOWN
        if any(big in name for big in self.urban_cities):
            return ZoneType.URBAN
        if "SAINT-" in name or "SAINTE-" in name or _RURAL_WORDS.search(name):
            return ZoneType.RURAL
        return ZoneType.UNKNOWN
