"""Decision layer turning a scored signal into ENTER / WAIT_MONITOR / NO_TRADE_BLOCKED.

Hard checks veto a signal outright. Everything else feeds a weighted score
that is compared against a per-asset-class profile; modifiers (news, session,
data quality, short-term momentum) can only scale that score, never force an
entry.
"""
import logging
import math
import time
from collections import Counter, deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Mapping, Optional
from zoneinfo import ZoneInfo

from config.utils import as_float, as_int
from strategy.instruments import classify_asset_class
from strategy.market_rules import to_minutes
from strategy.signals import Decision, DecisionState, Direction, SignalValidity, TradingSignal


logger = logging.getLogger(__name__)

DEFAULT_KILL_LAYER_IDS = frozenset({
    'smart_news_guard',
    'smart_event_risk_governor',
    'smart_post_news_regime',
    'smart_data_completeness',
    'smart_quote_integrity',
    'smart_liquidity_execution_risk',
    'smart_execution_slippage_risk',
    'trading_window_hard',
    'session_window',
    'smart_signal_ttl',
    'smart_failure_cost_check',
})

DEFAULT_LONDON_WINDOWS = (('08:00', '12:00'), ('14:00', '16:00'))


def clamp01(value: float) -> float:
    if value is None or not math.isfinite(value):
        return 0.0
    return max(0.0, min(1.0, value))


def smooth01(value: float) -> float:
    t = clamp01(value)
    return t * t * (3 - 2 * t)


@dataclass(frozen=True)
class DecisionProfile:
    enter_score: float = 72.0
    min_strength: float = 55.0
    min_win_rate: float = 55.0
    min_confidence: float = 55.0
    min_risk_reward: float = 1.6
    target_risk_reward: float = 2.4
    max_spread_to_atr_warn: float = 0.22
    max_spread_to_tp_warn: float = 0.12
    min_momentum_for_enter: float = 0.04
    weights: Mapping[str, float] = field(default_factory=lambda: {
        'direction': 0.12,
        'strength': 0.24,
        'probability': 0.22,
        'confidence': 0.16,
        'risk_reward': 0.12,
        'spread_efficiency': 0.14,
    })


def build_profile(asset_class: str, mode: str = 'balanced',
                  min_risk_reward: Optional[float] = None) -> DecisionProfile:
    base = DecisionProfile()
    if min_risk_reward is not None:
        base = replace(base, min_risk_reward=min_risk_reward)

    if asset_class == 'metals':
        profile = replace(
            base, enter_score=75.0, min_strength=58.0, min_win_rate=57.0,
            min_confidence=56.0, target_risk_reward=2.6, max_spread_to_atr_warn=0.26,
            weights={**base.weights, 'spread_efficiency': 0.16, 'probability': 0.24},
        )
    elif asset_class == 'crypto':
        profile = replace(
            base, enter_score=78.0, min_strength=60.0, min_win_rate=58.0,
            min_confidence=56.0, target_risk_reward=2.9, max_spread_to_atr_warn=0.3,
            max_spread_to_tp_warn=0.14,
            weights={**base.weights, 'strength': 0.26, 'probability': 0.24},
        )
    else:
        profile = base

    mode = (mode or 'balanced').strip().lower().replace('-', '_')
    if mode in ('smart_strong', 'smartstrong'):
        profile = replace(
            profile,
            enter_score=min(profile.enter_score, 45.0),
            min_strength=min(profile.min_strength, 45.0),
            min_win_rate=min(profile.min_win_rate, 52.0),
            min_confidence=min(profile.min_confidence, 45.0),
            min_momentum_for_enter=min(profile.min_momentum_for_enter, 0.02),
        )
    if mode == 'aggressive':
        profile = replace(
            profile,
            enter_score=min(profile.enter_score, 25.0),
            min_strength=min(profile.min_strength, 20.0),
            min_win_rate=min(profile.min_win_rate, 50.0),
            min_confidence=min(profile.min_confidence, 20.0),
            min_momentum_for_enter=0.0,
        )
    return profile


def session_modifier(asset_class: str, now: float) -> float:
    hour = datetime.fromtimestamp(now, tz=timezone.utc).hour
    is_asia = 0 <= hour < 7
    is_london = 7 <= hour < 13
    is_ny = 13 <= hour < 21
    is_off = not (is_asia or is_london or is_ny)

    if asset_class == 'crypto':
        return 0.96 if is_off else 1.0
    if asset_class == 'metals':
        if is_asia:
            return 0.9
        return 1.0 if (is_london or is_ny) else 0.92
    if is_london or is_ny:
        return 1.0
    return 0.95 if is_asia else 0.9


def estimate_win_rate(signal: TradingSignal) -> float:
    """Conservative edge estimate mapped onto 35..90."""
    if signal.direction is Direction.NEUTRAL:
        return 50.0
    components = signal.components or {}
    technical = as_float((components.get('technical') or {}).get('score'), 0.0)
    news_conf = as_float((components.get('news') or {}).get('confidence'), 0.0)
    economic = as_float((components.get('economic') or {}).get('score'), 0.0)
    risk_reward = min(max(signal.entry.risk_reward or 0.0, 0.0), 4.0)

    edge = (
        min(max(signal.strength, 0.0), 100.0) * 0.34
        + min(max(signal.confidence, 0.0), 100.0) * 0.3
        + min(abs(technical), 100.0) * 0.18
        + min(abs(economic), 100.0) * 0.1
        + min(max(news_conf, 0.0), 100.0) * 0.05
        + min(20.0, max(0.0, (risk_reward - 1) * 10))
    )
    estimate = 35 + (1 / (1 + math.exp(-(edge - 55) / 12))) * 55
    if signal.entry.trailing_stop.enabled:
        estimate += 1.2
    return round(max(35.0, min(90.0, estimate)), 1)


@dataclass
class DecisionContext:
    """Runtime facts the signal itself does not carry."""

    active_trades: int = 0
    max_concurrent_trades: int = 5
    high_impact_news_soon: bool = False
    now: Optional[float] = None


class KillSwitch:
    """Operator override; while engaged every evaluation is blocked."""

    def __init__(self):
        self.engaged = False
        self.reason: Optional[str] = None
        self.engaged_at: Optional[float] = None

    def engage(self, reason: str) -> None:
        self.engaged = True
        self.reason = reason
        self.engaged_at = time.time()
        logger.warning("Kill switch engaged: %s", reason)

    def release(self) -> None:
        if self.engaged:
            logger.info("Kill switch released (was: %s)", self.reason)
        self.engaged = False
        self.reason = None
        self.engaged_at = None

    def snapshot(self) -> Dict[str, Any]:
        return {'engaged': self.engaged, 'reason': self.reason, 'engaged_at': self.engaged_at}


@dataclass
class _MemoryItem:
    at: float
    score01: float
    state: DecisionState


class SignalValidityEngine:
    def __init__(self, settings: Optional[Mapping[str, Any]] = None,
                 kill_switch: Optional[KillSwitch] = None,
                 audit_logger=None, clock=time.time):
        settings = dict(settings or {})
        self.max_spread_pips = as_float(settings.get('max_spread_pips'), 3.0)
        self.max_spread_relative = as_float(settings.get('max_spread_relative'), 0.003)
        self.news_blackout_minutes = as_float(settings.get('news_blackout_minutes'), 30.0)
        self.enforce_trading_windows = bool(settings.get('enforce_trading_windows', False))
        self.trading_windows = [
            (w.get('start'), w.get('end')) if isinstance(w, Mapping) else tuple(w)
            for w in settings.get('trading_windows_london') or DEFAULT_LONDON_WINDOWS
        ]
        self.profile_mode = str(settings.get('profile_mode') or 'balanced')
        self.min_risk_reward = as_float(settings.get('min_risk_reward'))
        self.kill_layer_ids = frozenset(settings.get('kill_layer_ids') or DEFAULT_KILL_LAYER_IDS)
        self.memory_size = as_int(settings.get('memory_size'), 8, minimum=1)
        self.max_recent_rejections = as_int(settings.get('max_recent_rejections'), 200, minimum=1)

        self.kill_switch = kill_switch or KillSwitch()
        self.audit_logger = audit_logger
        self.clock = clock

        self._memory: Dict[str, Deque[_MemoryItem]] = {}
        self._rejections_total = 0
        self._rejections_primary: Counter = Counter()
        self._rejections_secondary: Counter = Counter()
        self._recent_rejections: Deque[Dict[str, Any]] = deque(maxlen=self.max_recent_rejections)

    def evaluate(self, signal: TradingSignal,
                 context: Optional[DecisionContext] = None) -> SignalValidity:
        context = context or DecisionContext()
        now = context.now if context.now is not None else self.clock()
        asset_class = classify_asset_class(signal.pair)
        profile = build_profile(asset_class, self.profile_mode, self.min_risk_reward)
        market_data = signal.market_data or {}

        hard_checks = {
            'market_data_fresh': self._market_data_fresh(market_data),
            'spread_ok': self._spread_ok(asset_class, market_data),
            'no_high_impact_news_soon': not self._high_impact_news_soon(signal, context),
            'within_risk_limit': self._within_risk_limit(signal, context),
            'within_trading_window': self._within_trading_window(asset_class, now),
            'data_quality_ok': self._data_quality_ok(market_data),
        }

        kill_switch = self._kill_switch_state(signal)
        hard_checks['smart_kill_switch_ok'] = not kill_switch['blocked']
        blocked = not all(hard_checks.values())

        strength_score = smooth01((signal.strength - profile.min_strength) / (100 - profile.min_strength))
        win_rate = signal.estimated_win_rate
        if win_rate is None:
            win_rate = estimate_win_rate(signal)
        probability_score = smooth01((win_rate - profile.min_win_rate) / (95 - profile.min_win_rate))
        confidence_score = smooth01(
            (signal.confidence - profile.min_confidence) / (100 - profile.min_confidence)
        )
        risk_reward = signal.entry.risk_reward
        if risk_reward is None:
            rr_score = 0.45
        else:
            rr_score = smooth01(
                (risk_reward - profile.min_risk_reward)
                / (profile.target_risk_reward - profile.min_risk_reward)
            )
        direction_score = 0.4 if signal.direction is Direction.NEUTRAL else 1.0
        spread_score = self._spread_efficiency(signal, market_data, profile)

        contributors = {
            'direction': direction_score,
            'strength': strength_score,
            'probability': probability_score,
            'confidence': confidence_score,
            'risk_reward': rr_score,
            'spread_efficiency': spread_score,
        }
        weights = profile.weights
        weight_sum = sum(weights.values()) or 1.0
        weighted01 = clamp01(sum(weights[k] * v for k, v in contributors.items()) / weight_sum)

        news = signal.components.get('news') or {}
        news_impact = as_float(news.get('impact'), 0.0)
        upcoming = as_float(news.get('upcomingEvents', news.get('upcoming_events')), 0.0)
        news_mod = clamp01(1 - min(0.22, (news_impact / 100) * 0.18 + upcoming * 0.01))
        session_mod = session_modifier(asset_class, now)
        dq_penalty = self._data_quality_penalty(market_data)

        momentum = self._momentum(signal.pair, weighted01, now)
        momentum_boost = 1.0 if momentum is None else max(0.9, min(1.1, 1 + momentum * 0.06))

        score01 = clamp01(weighted01 * news_mod * session_mod * dq_penalty * momentum_boost)
        score = round(score01 * 100, 1)

        if blocked:
            state = DecisionState.NO_TRADE_BLOCKED
            category = 'killswitch' if kill_switch['blocked'] else 'blocked'
        elif signal.direction is not Direction.NEUTRAL and score >= profile.enter_score:
            state = DecisionState.ENTER
            category = 'enter'
        else:
            state = DecisionState.WAIT_MONITOR
            category = 'no_signal'

        missing: List[str] = []
        what_would_change: List[str] = []
        if state is DecisionState.WAIT_MONITOR:
            if signal.direction is Direction.NEUTRAL:
                missing.append('direction_confirmation')
                what_would_change.append('A clear directional bias (technical/structure alignment).')
            if strength_score < 0.65:
                missing.append('strength')
                what_would_change.append(f'Strength rising above {min(95, profile.min_strength + 15):.0f}.')
            if probability_score < 0.6:
                missing.append('probability')
                what_would_change.append(f'Estimated win-rate above {min(95, profile.min_win_rate + 15):.0f}%.')
            if spread_score < 0.65:
                missing.append('execution_cost')
                what_would_change.append('Tighter spread or larger expected move (ATR/TP).')
            if momentum is not None and momentum < profile.min_momentum_for_enter:
                missing.append('confidence_momentum')
                what_would_change.append('Confidence/score improving over the next few updates.')

        blockers = [name for name, ok in hard_checks.items() if ok is not True]
        decision = Decision(
            state=state,
            score=score,
            blockers=blockers,
            missing=missing,
            blocked=blocked,
            category=category,
            asset_class=asset_class,
            what_would_change=what_would_change,
            contributors={k: round(v, 3) for k, v in contributors.items()},
            modifiers={
                'news': round(news_mod, 3),
                'session': round(session_mod, 3),
                'data_quality': round(dq_penalty, 3),
                'momentum': None if momentum is None else round(momentum, 4),
            },
            kill_switch=kill_switch,
        )

        self._remember(signal.pair, _MemoryItem(at=now, score01=score01, state=state))
        if state is not DecisionState.ENTER:
            self._record_rejection(signal, decision, now)

        return SignalValidity(
            is_valid=state is DecisionState.ENTER,
            checks=dict(hard_checks),
            reason=self._reason(state, score, asset_class, missing, blockers, kill_switch),
            decision=decision,
        )

    def get_rejection_summary(self) -> Dict[str, Any]:
        def top(counter: Counter) -> List[Dict[str, Any]]:
            return [{'reason': reason, 'count': count} for reason, count in counter.most_common(5)]

        return {
            'total': self._rejections_total,
            'top_primary': top(self._rejections_primary),
            'top_secondary': top(self._rejections_secondary),
            'recent': list(self._recent_rejections)[:50],
        }

    def _kill_switch_state(self, signal: TradingSignal) -> Dict[str, Any]:
        ids: List[str] = []
        if self.kill_switch.engaged:
            ids.append('operator_kill_switch')
        confluence = signal.components.get('confluence') or {}
        for layer in confluence.get('layers') or []:
            if not isinstance(layer, Mapping):
                continue
            layer_id = str(layer.get('id') or '')
            if layer.get('status') == 'FAIL' and layer_id in self.kill_layer_ids:
                ids.append(layer_id)
        return {
            'engaged': self.kill_switch.engaged,
            'reason': self.kill_switch.reason,
            'blocked': bool(ids),
            'ids': ids,
        }

    @staticmethod
    def _market_data_fresh(md: Mapping[str, Any]) -> bool:
        if not md:
            return True
        status = str(md.get('status') or '').lower()
        recommendation = str(md.get('recommendation') or '').lower()
        issues = [str(issue) for issue in md.get('issues') or []]
        explicitly_blocked = (
            bool(md.get('circuitBreaker') or md.get('circuit_breaker'))
            or any('circuit_breaker' in issue for issue in issues)
            or any('provider_unavailable' in issue for issue in issues)
        )
        return (
            md.get('stale') is not True
            and (status != 'critical' or not explicitly_blocked)
            and (recommendation != 'block' or not explicitly_blocked)
        )

    def _spread_ok(self, asset_class: str, md: Mapping[str, Any]) -> bool:
        if asset_class in ('forex', 'metals', 'crypto'):
            spread_pips = as_float(md.get('spreadPips', md.get('spread_pips')))
            return spread_pips is None or spread_pips <= self.max_spread_pips
        quote = md.get('eaQuote') or md.get('ea_quote') or {}
        bid = as_float(quote.get('bid'))
        ask = as_float(quote.get('ask'))
        if not bid or not ask or bid <= 0 or ask <= 0:
            return True
        mid = (bid + ask) / 2
        return abs(ask - bid) / mid <= self.max_spread_relative

    def _high_impact_news_soon(self, signal: TradingSignal, context: DecisionContext) -> bool:
        if context.high_impact_news_soon:
            return True
        news = signal.components.get('news') or {}
        minutes = as_float(news.get('nextHighImpactMinutes', news.get('next_high_impact_minutes')))
        if minutes is None:
            return False
        return abs(minutes) <= self.news_blackout_minutes

    @staticmethod
    def _within_risk_limit(signal: TradingSignal, context: DecisionContext) -> bool:
        # Only a hard blocker once there is an entry to size.
        if not signal.entry.has_levels():
            return True
        capacity_ok = context.active_trades < context.max_concurrent_trades
        if signal.risk_management.can_trade is not None:
            return signal.risk_management.can_trade and capacity_ok
        return capacity_ok

    def _within_trading_window(self, asset_class: str, now: float) -> bool:
        if not self.enforce_trading_windows or asset_class != 'forex':
            return True
        local = datetime.fromtimestamp(now, tz=ZoneInfo('Europe/London'))
        minutes = local.hour * 60 + local.minute
        for start, end in self.trading_windows:
            start_min = to_minutes(start)
            end_min = to_minutes(end)
            if start_min is None or end_min is None:
                continue
            if start_min <= minutes < end_min:
                return True
        return False

    @staticmethod
    def _data_quality_ok(md: Mapping[str, Any]) -> bool:
        if not md:
            return True
        if md.get('circuitBreaker') or md.get('circuit_breaker'):
            return False
        if str(md.get('recommendation') or '').lower() == 'block':
            return False
        return not (md.get('confidenceFloorBreached') or md.get('confidence_floor_breached'))

    @staticmethod
    def _data_quality_penalty(md: Mapping[str, Any]) -> float:
        if not md:
            return 1.0
        penalty = max(0.35, min(1.0, as_float(md.get('modifier'), 1.0)))
        if md.get('confidenceFloorBreached') or md.get('confidence_floor_breached'):
            penalty = min(penalty, 0.82)
        if md.get('stale'):
            penalty = min(penalty, 0.9)
        return round(penalty, 3)

    @staticmethod
    def _spread_efficiency(signal: TradingSignal, md: Mapping[str, Any],
                           profile: DecisionProfile) -> float:
        spread_pips = as_float(md.get('spreadPips', md.get('spread_pips')))
        atr_pips = as_float(md.get('atrPips', md.get('atr_pips')))
        tp_pips = signal.entry.take_profit_pips
        spread_to_atr = spread_pips / atr_pips if spread_pips is not None and atr_pips else None
        spread_to_tp = spread_pips / tp_pips if spread_pips is not None and tp_pips else None
        atr_factor = 1.0 if spread_to_atr is None else clamp01(1 - spread_to_atr / profile.max_spread_to_atr_warn)
        tp_factor = 1.0 if spread_to_tp is None else clamp01(1 - spread_to_tp / profile.max_spread_to_tp_warn)
        return clamp01(0.5 * atr_factor + 0.5 * tp_factor)

    def _momentum(self, pair: str, score01: float, now: float) -> Optional[float]:
        history = self._memory.get(pair)
        if not history:
            return None
        last = history[-1]
        elapsed_min = max(0.001, now - last.at) / 60.0
        return round((score01 - last.score01) / elapsed_min, 4)

    def _remember(self, pair: str, item: _MemoryItem) -> None:
        if not pair:
            return
        history = self._memory.setdefault(pair, deque(maxlen=self.memory_size))
        history.append(item)

    def _record_rejection(self, signal: TradingSignal, decision: Decision, now: float) -> None:
        kill_ids = decision.kill_switch.get('ids') or []
        candidates = list(kill_ids) + list(decision.blockers) + list(decision.missing)
        fallback = 'waiting_for_alignment' if decision.state is DecisionState.WAIT_MONITOR else 'blocked'
        primary = candidates[0] if candidates else fallback
        secondary = candidates[1] if len(candidates) > 1 else None

        entry = {
            'at': now,
            'pair': signal.pair,
            'state': decision.state.value,
            'category': decision.category,
            'primary': primary,
            'secondary': secondary,
            'score': decision.score,
        }
        self._rejections_total += 1
        self._rejections_primary[primary] += 1
        if secondary:
            self._rejections_secondary[secondary] += 1
        self._recent_rejections.appendleft(entry)
        if self.audit_logger is not None:
            self.audit_logger.record('trade.candidate.rejected', entry)

    @staticmethod
    def _reason(state: DecisionState, score: float, asset_class: str, missing: List[str],
                blockers: List[str], kill_switch: Mapping[str, Any]) -> str:
        if state is DecisionState.ENTER:
            return f"ENTER: score={score}/100 ({asset_class})"
        if state is DecisionState.WAIT_MONITOR:
            return f"WAIT: score={score}/100 ({asset_class}) missing={','.join(missing) or '-'}"
        if kill_switch.get('blocked'):
            ids = ','.join(kill_switch.get('ids', [])[:6])
            return f"NO-TRADE (kill-switch): {ids or 'constraints'}"
        return f"NO-TRADE (blocked): {','.join(blockers) or 'constraints'}"
