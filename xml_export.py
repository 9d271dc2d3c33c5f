"""
xml_export.py -- Blockly bot file for a recorded signal.

The external bot runner imports a single "trade" block:

    <xml xmlns="https://developers.google.com/blockly/xml">
      <block type="trade" id="1" deletable="false" movable="false">
        <field name="MARKET">synthetic_index</field>
        ...
      </block>
    </xml>
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from decimal import Decimal

from consensus import TradingSignal

BLOCKLY_NS = "https://developers.google.com/blockly/xml"
MARKET = "synthetic_index"
SUBMARKET = "random_indices"
CURRENCY = "USD"
DURATION_TYPE = "t"     # ticks


def trade_type_for(signal: TradingSignal) -> str:
    if signal.type == "exact_digit":
        return "digit_match"
    if signal.predicted_band == "over2":
        return "digit_over"
    if signal.predicted_band == "under7":
        return "digit_under"
    raise ValueError(f"signal {signal.id} has no exportable target")


def contract_target(signal: TradingSignal) -> int:
    """Digit for a match contract, band boundary (2 or 7) otherwise."""
    if signal.type == "exact_digit":
        if signal.predicted_digit is None:
            raise ValueError(f"signal {signal.id} is missing predicted_digit")
        return int(signal.predicted_digit)
    return 2 if signal.predicted_band == "over2" else 7


def duration_ticks(symbol: str) -> int:
    return 5 if "1S" in symbol.upper() else 10


def format_amount(stake: float) -> str:
    """Shortest exact decimal for the stake, without exponent notation."""
    text = format(Decimal(repr(float(stake))), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def build_bot_xml(signal: TradingSignal, stake: float) -> str:
    root = ET.Element("xml", {"xmlns": BLOCKLY_NS})
    block = ET.SubElement(
        root, "block", {"type": "trade", "id": "1", "deletable": "false", "movable": "false"}
    )
    fields = [
        ("MARKET", MARKET),
        ("SUBMARKET", SUBMARKET),
        ("SYMBOL", signal.symbol),
        ("TRADETYPE", trade_type_for(signal)),
        ("TYPE", str(contract_target(signal))),
        ("AMOUNT", format_amount(stake)),
        ("DURATION", str(duration_ticks(signal.symbol))),
        ("DURATIONTYPE", DURATION_TYPE),
        ("CURRENCY", CURRENCY),
    ]
    for name, value in fields:
        ET.SubElement(block, "field", {"name": name}).text = value
    ET.indent(root, space="  ")
    body = ET.tostring(root, encoding="unicode")
    return '<?xml version="1.0" encoding="UTF-8"?>\n' + body + "\n"


def export_filename(signal: TradingSignal) -> str:
    return f"accelerator_zone_{signal.symbol}_{signal.id[:8]}.xml"
