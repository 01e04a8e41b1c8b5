import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from config.utils import as_float


class Direction(Enum):
    BUY = "BUY"
    SELL = "SELL"
    NEUTRAL = "NEUTRAL"

    @classmethod
    def parse(cls, value: Any) -> 'Direction':
        raw = str(getattr(value, 'value', value) or '').strip().upper()
        if raw in ('BUY', 'LONG'):
            return cls.BUY
        if raw in ('SELL', 'SHORT'):
            return cls.SELL
        return cls.NEUTRAL


class DecisionState(Enum):
    ENTER = "ENTER"
    WAIT_MONITOR = "WAIT_MONITOR"
    NO_TRADE_BLOCKED = "NO_TRADE_BLOCKED"


def _pick(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


@dataclass
class TrailingStopPlan:
    enabled: bool = False
    activation_level: Optional[float] = None
    trailing_distance: Optional[float] = None
    breakeven_at_fraction: Optional[float] = None
    activation_at_fraction: Optional[float] = None
    step_distance: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Any) -> 'TrailingStopPlan':
        data = _mapping(data)
        return cls(
            enabled=bool(data.get('enabled', False)),
            activation_level=as_float(_pick(data, 'activationLevel', 'activation_level')),
            trailing_distance=as_float(_pick(data, 'trailingDistance', 'trailing_distance')),
            breakeven_at_fraction=as_float(_pick(data, 'breakevenAtFraction', 'breakeven_at_fraction')),
            activation_at_fraction=as_float(_pick(data, 'activationAtFraction', 'activation_at_fraction')),
            step_distance=as_float(_pick(data, 'stepDistance', 'step_distance')),
        )


@dataclass
class EntryPlan:
    price: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    trailing_stop: TrailingStopPlan = field(default_factory=TrailingStopPlan)
    atr: Optional[float] = None
    risk_reward: Optional[float] = None
    stop_loss_pips: Optional[float] = None
    take_profit_pips: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Any) -> 'EntryPlan':
        data = _mapping(data)
        return cls(
            price=as_float(data.get('price')),
            stop_loss=as_float(_pick(data, 'stopLoss', 'stop_loss')),
            take_profit=as_float(_pick(data, 'takeProfit', 'take_profit')),
            trailing_stop=TrailingStopPlan.from_dict(_pick(data, 'trailingStop', 'trailing_stop')),
            atr=as_float(data.get('atr')),
            risk_reward=as_float(_pick(data, 'riskReward', 'risk_reward')),
            stop_loss_pips=as_float(_pick(data, 'stopLossPips', 'stop_loss_pips')),
            take_profit_pips=as_float(_pick(data, 'takeProfitPips', 'take_profit_pips')),
        )

    def has_levels(self) -> bool:
        return None not in (self.price, self.stop_loss, self.take_profit)


@dataclass
class RiskPlan:
    position_size: float = 0.0
    risk_fraction: Optional[float] = None
    stress_tests: Dict[str, Any] = field(default_factory=dict)
    guardrails: Dict[str, Any] = field(default_factory=dict)
    can_trade: Optional[bool] = None

    @classmethod
    def from_dict(cls, data: Any) -> 'RiskPlan':
        data = _mapping(data)
        can_trade = _pick(data, 'canTrade', 'can_trade')
        return cls(
            position_size=as_float(_pick(data, 'positionSize', 'position_size'), 0.0),
            risk_fraction=as_float(_pick(data, 'riskFraction', 'risk_fraction')),
            stress_tests=dict(_mapping(_pick(data, 'stressTests', 'stress_tests'))),
            guardrails=dict(_mapping(data.get('guardrails'))),
            can_trade=None if can_trade is None else bool(can_trade),
        )


@dataclass
class Decision:
    state: DecisionState = DecisionState.WAIT_MONITOR
    score: Optional[float] = None
    blockers: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    blocked: bool = False
    category: Optional[str] = None
    asset_class: Optional[str] = None
    what_would_change: List[str] = field(default_factory=list)
    contributors: Dict[str, float] = field(default_factory=dict)
    modifiers: Dict[str, Optional[float]] = field(default_factory=dict)
    kill_switch: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> Optional['Decision']:
        data = _mapping(data)
        if not data:
            return None
        try:
            state = DecisionState(str(data.get('state') or 'WAIT_MONITOR').upper())
        except ValueError:
            state = DecisionState.WAIT_MONITOR
        return cls(
            state=state,
            score=as_float(data.get('score')),
            blockers=[str(v) for v in data.get('blockers') or []][:10],
            missing=[str(v) for v in data.get('missing') or []][:12],
            blocked=bool(data.get('blocked', state is DecisionState.NO_TRADE_BLOCKED)),
            category=data.get('category'),
            asset_class=_pick(data, 'assetClass', 'asset_class'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'state': self.state.value,
            'score': self.score,
            'blocked': self.blocked,
            'category': self.category,
            'asset_class': self.asset_class,
            'blockers': list(self.blockers),
            'missing': list(self.missing),
            'what_would_change': list(self.what_would_change),
            'contributors': dict(self.contributors),
            'modifiers': dict(self.modifiers),
            'kill_switch': dict(self.kill_switch),
        }


@dataclass
class SignalValidity:
    is_valid: bool = False
    checks: Dict[str, bool] = field(default_factory=dict)
    reason: Optional[str] = None
    decision: Optional[Decision] = None

    @classmethod
    def from_dict(cls, data: Any) -> Optional['SignalValidity']:
        data = _mapping(data)
        if not data:
            return None
        return cls(
            is_valid=bool(_pick(data, 'isValid', 'is_valid', default=False)),
            checks={str(k): bool(v) for k, v in _mapping(data.get('checks')).items()},
            reason=data.get('reason'),
            decision=Decision.from_dict(data.get('decision')),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_valid': self.is_valid,
            'checks': dict(self.checks),
            'reason': self.reason,
            'decision': self.decision.to_dict() if self.decision else None,
        }


@dataclass
class TradingSignal:
    """Scored directional recommendation handed to the execution engine."""

    pair: str
    direction: Direction
    timestamp: float = field(default_factory=time.time)
    strength: float = 0.0
    confidence: float = 0.0
    final_score: Optional[float] = None
    estimated_win_rate: Optional[float] = None
    components: Dict[str, Any] = field(default_factory=dict)
    entry: EntryPlan = field(default_factory=EntryPlan)
    risk_management: RiskPlan = field(default_factory=RiskPlan)
    is_valid: Optional[SignalValidity] = None
    expires_at: Optional[float] = None
    source: Optional[str] = None
    broker_preference: Optional[str] = None
    market_data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'TradingSignal':
        expires_at = as_float(_pick(data, 'expiresAt', 'expires_at'))
        # Millisecond epochs from the JS bridges.
        if expires_at is not None and expires_at > 1e11:
            expires_at = expires_at / 1000.0
        timestamp = as_float(data.get('timestamp'), time.time())
        if timestamp > 1e11:
            timestamp = timestamp / 1000.0
        components = dict(_mapping(data.get('components')))
        return cls(
            pair=str(data.get('pair') or '').strip().upper(),
            direction=Direction.parse(data.get('direction')),
            timestamp=timestamp,
            strength=as_float(data.get('strength'), 0.0),
            confidence=as_float(data.get('confidence'), 0.0),
            final_score=as_float(_pick(data, 'finalScore', 'final_score')),
            estimated_win_rate=as_float(_pick(data, 'estimatedWinRate', 'estimated_win_rate')),
            components=components,
            entry=EntryPlan.from_dict(data.get('entry')),
            risk_management=RiskPlan.from_dict(_pick(data, 'riskManagement', 'risk_management')),
            is_valid=SignalValidity.from_dict(_pick(data, 'isValid', 'is_valid')),
            expires_at=expires_at,
            source=data.get('source'),
            broker_preference=_pick(data, 'brokerPreference', 'broker_preference'),
            market_data=dict(_mapping(_pick(data, 'marketData', 'market_data',
                                            default=components.get('marketData')))),
        )

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None or self.expires_at <= 0:
            return False
        return (now if now is not None else time.time()) > self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            'pair': self.pair,
            'direction': self.direction.value,
            'timestamp': self.timestamp,
            'strength': self.strength,
            'confidence': self.confidence,
            'final_score': self.final_score,
            'entry': {
                'price': self.entry.price,
                'stop_loss': self.entry.stop_loss,
                'take_profit': self.entry.take_profit,
                'trailing_stop_enabled': self.entry.trailing_stop.enabled,
            },
            'risk_management': {
                'position_size': self.risk_management.position_size,
                'risk_fraction': self.risk_management.risk_fraction,
            },
            'is_valid': self.is_valid.to_dict() if self.is_valid else None,
            'source': self.source,
        }
