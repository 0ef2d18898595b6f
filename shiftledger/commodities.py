from __future__ import annotations

from dataclasses import dataclass

from shiftledger.config import Settings, settings as default_settings

ROLLS = "rolls"
MEAT = "meat"
DRINKS = "drinks"
COMMODITY_ORDER = (ROLLS, MEAT, DRINKS)


@dataclass(frozen=True)
class CommodityRule:
    name: str
    label: str
    unit: str
    usage_column: str
    category_keywords: tuple[str, ...]
    units_per_sale: int
    waste_allowance: int
    banded: bool = False


def commodity_rules(config: Settings | None = None) -> dict[str, CommodityRule]:
    config = config or default_settings
    return {
        ROLLS: CommodityRule(
            name=ROLLS,
            label="Burger Rolls",
            unit="units",
            usage_column="rolls",
            category_keywords=("burger",),
            units_per_sale=1,
            waste_allowance=config.rolls_waste_allowance,
        ),
        MEAT: CommodityRule(
            name=MEAT,
            label="Meat",
            unit="g",
            usage_column="patties",
            category_keywords=("burger",),
            units_per_sale=config.meat_grams_per_patty,
            waste_allowance=config.meat_waste_allowance_g,
        ),
        DRINKS: CommodityRule(
            name=DRINKS,
            label="Drinks",
            unit="units",
            usage_column="drinks",
            category_keywords=("drink", "beverage"),
            units_per_sale=1,
            waste_allowance=config.drinks_waste_allowance,
            banded=True,
        ),
    }


def get_rule(commodity: str, config: Settings | None = None) -> CommodityRule:
    rules = commodity_rules(config)
    if commodity not in rules:
        raise KeyError(commodity)
    return rules[commodity]
