"""Catalog of trusted price sources (DIA real-world-asset feeds).

Market ``data_source_id`` values on the ledger index into this table. The
``default_price`` is what the oracle falls back to (with jitter) when the
feed is unreachable.
"""

from __future__ import annotations

from dataclasses import dataclass

from src.connectors.ledger import ASSET_COMMODITY, ASSET_ETF, ASSET_FX


@dataclass(frozen=True)
class DataSource:
    id: int
    name: str
    symbol: str
    category: str  # "commodity" | "etf" | "fx"
    asset_type: int  # bitmask, see ledger.ASSET_*
    path: str  # relative to the DIA RWA base url
    default_price: float


DATA_SOURCES: tuple[DataSource, ...] = (
    # ── Commodities ──
    DataSource(1, "Natural Gas", "NG/USD", "commodity", ASSET_COMMODITY, "Commodities/NG-USD", 3.169),
    DataSource(2, "Crude Oil", "WTI/USD", "commodity", ASSET_COMMODITY, "Commodities/WTI-USD", 58.78),
    DataSource(3, "Brent Oil", "XBR/USD", "commodity", ASSET_COMMODITY, "Commodities/XBR-USD", 63.03),
    # ── FX ──
    DataSource(4, "Canadian Dollar", "CAD/USD", "fx", ASSET_FX, "Fiat/CAD-USD", 0.7186),
    DataSource(5, "Australian Dollar", "AUD/USD", "fx", ASSET_FX, "Fiat/AUD-USD", 0.6684),
    DataSource(6, "Chinese Yuan", "CNY/USD", "fx", ASSET_FX, "Fiat/CNY-USD", 0.1432),
    # ── ETFs ──
    DataSource(7, "20+ Year Treasury Bond ETF", "TLT", "etf", ASSET_ETF, "ETF/TLT", 87.92),
    DataSource(8, "1-3 Year Treasury Bond ETF", "SHY", "etf", ASSET_ETF, "ETF/SHY", 82.84),
    DataSource(9, "Short-Term Treasury Fund", "VGSH", "etf", ASSET_ETF, "ETF/VGSH", 58.74),
    DataSource(10, "U.S. Treasury Bond ETF", "GOVT", "etf", ASSET_ETF, "ETF/GOVT", 23.06),
    DataSource(11, "Bitcoin & Ether ETF", "BETH", "etf", ASSET_ETF, "ETF/BETH", 52.66),
    DataSource(12, "Ethereum Trust iShares", "ETHA", "etf", ASSET_ETF, "ETF/ETHA", 23.19),
    DataSource(13, "Bitcoin Strategy ETF", "BITO", "etf", ASSET_ETF, "ETF/BITO", 12.52),
    DataSource(14, "Bitcoin Trust Grayscale", "GBTC", "etf", ASSET_ETF, "ETF/GBTC", 70.48),
    DataSource(15, "Bitcoin ETF VanEck", "HODL", "etf", ASSET_ETF, "ETF/HODL", 25.52),
    DataSource(16, "Bitcoin ETF Ark 21Shares", "ARKB", "etf", ASSET_ETF, "ETF/ARKB", 29.95),
    DataSource(17, "Bitcoin Index Fund Fidelity", "FBTC", "etf", ASSET_ETF, "ETF/FBTC", 78.60),
    DataSource(18, "Bitcoin Trust iShares", "IBIT", "etf", ASSET_ETF, "ETF/IBIT", 51.17),
    DataSource(19, "QQQ Trust Invesco", "QQQ", "etf", ASSET_ETF, "ETF/QQQ", 626.66),
    DataSource(20, "Total Stock Market ETF", "VTI", "etf", ASSET_ETF, "ETF/VTI", 342.37),
    DataSource(21, "S&P 500 ETF SPDR", "SPY", "etf", ASSET_ETF, "ETF/SPY", 693.99),
    DataSource(22, "S&P 500 ETF Vanguard", "VOO", "etf", ASSET_ETF, "ETF/VOO", 638.25),
)

_BY_ID: dict[int, DataSource] = {ds.id: ds for ds in DATA_SOURCES}


def get_data_source(source_id: int) -> DataSource | None:
    return _BY_ID.get(source_id)


def sources_for_asset_mask(mask: int) -> list[DataSource]:
    return [ds for ds in DATA_SOURCES if ds.asset_type & mask]
