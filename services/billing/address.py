"""Best-effort decomposition of free-text Irish addresses.

Splitting on commas is a known-fragile heuristic (bills format addresses
inconsistently), so it sits behind the ``AddressParser`` protocol and the
transformer only depends on the protocol.
"""

import re
from typing import Protocol

from services.billing.wire import WireAddress

EIRCODE_SEARCH = re.compile(r"(?:[A-Z]\d{2}|D6W)\s?[A-Z0-9]{4}", re.IGNORECASE)


class AddressParser(Protocol):
    def parse(self, raw: str) -> WireAddress:
        ...


class CommaAddressParser:
    """Positional comma split: line 1, line 2, city, county.

    Missing parts become empty strings; the Eircode is found by pattern
    anywhere in the text.
    """

    def parse(self, raw: str) -> WireAddress:
        parts = [part.strip() for part in raw.split(",")]

        def part(index: int) -> str:
            return parts[index] if index < len(parts) else ""

        match = EIRCODE_SEARCH.search(raw)
        return WireAddress(
            line_1=part(0),
            line_2=part(1),
            city=part(2),
            county=part(3),
            eircode=match.group(0).upper() if match else "",
        )
