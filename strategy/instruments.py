from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class InstrumentMeta:
    """Static trading metadata for one canonical symbol."""

    symbol: str
    asset_class: str
    price_precision: int
    pip_size: float
    contract_size: float


_FX_PAIRS = (
    'EURUSD', 'GBPUSD', 'USDJPY', 'AUDUSD', 'USDCAD', 'NZDUSD', 'USDCHF',
    'EURGBP', 'EURJPY', 'GBPJPY', 'AUDJPY', 'CADJPY', 'EURCHF', 'EURAUD',
    'EURCAD', 'GBPAUD', 'GBPCAD', 'AUDCAD', 'AUDNZD',
)

_METALS = {
    'XAUUSD': InstrumentMeta('XAUUSD', 'metals', 2, 0.1, 100.0),
    'XAGUSD': InstrumentMeta('XAGUSD', 'metals', 3, 0.01, 5000.0),
}

_CRYPTO = {
    'BTCUSD': InstrumentMeta('BTCUSD', 'crypto', 2, 1.0, 1.0),
    'ETHUSD': InstrumentMeta('ETHUSD', 'crypto', 2, 0.1, 1.0),
    'SOLUSD': InstrumentMeta('SOLUSD', 'crypto', 3, 0.01, 1.0),
    'XRPUSD': InstrumentMeta('XRPUSD', 'crypto', 5, 0.0001, 1.0),
}


def _fx_instrument(pair: str) -> InstrumentMeta:
    is_yen = pair[3:6] == 'JPY'
    return InstrumentMeta(
        symbol=pair,
        asset_class='forex',
        price_precision=3 if is_yen else 5,
        pip_size=0.01 if is_yen else 0.0001,
        contract_size=100000.0,
    )


CATALOG: Dict[str, InstrumentMeta] = {pair: _fx_instrument(pair) for pair in _FX_PAIRS}
CATALOG.update(_METALS)
CATALOG.update(_CRYPTO)


def classify_asset_class(symbol: Optional[str]) -> str:
    """Best-effort asset class for symbols missing from the catalog."""
    normalized = str(symbol or '').strip().upper()
    if not normalized:
        return 'forex'
    known = CATALOG.get(normalized)
    if known:
        return known.asset_class
    if normalized.startswith('#'):
        return 'cfd'
    if normalized.startswith(('XAU', 'XAG', 'XPT', 'XPD')):
        return 'metals'
    if normalized.startswith(('BTC', 'ETH', 'SOL', 'XRP')):
        return 'crypto'
    return 'forex'


def get_instrument(symbol: Optional[str]) -> Optional[InstrumentMeta]:
    if not symbol:
        return None
    return CATALOG.get(str(symbol).strip().upper())
