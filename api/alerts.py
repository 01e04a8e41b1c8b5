import asyncio
import logging
import time
from dataclasses import dataclass, field
from email.mime.text import MIMEText
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

import aiohttp
import aiosmtplib

from api.metrics import metrics
from config.utils import as_float, as_int, as_list


logger = logging.getLogger(__name__)

SEVERITIES = ('info', 'warning', 'critical')
_LOG_LEVELS = {'info': logging.INFO, 'warning': logging.WARNING, 'critical': logging.ERROR}


@dataclass
class AlertEvent:
    topic: str
    message: str
    severity: str = 'info'
    body: Optional[str] = None
    subject: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    channels: Optional[List[str]] = None
    dedupe_key: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self):
        severity = str(self.severity or 'info').strip().lower()
        self.severity = severity if severity in SEVERITIES else 'info'
        self.topic = str(self.topic or 'general')
        self.message = str(self.message or '').strip()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'AlertEvent':
        channels = data.get('channels')
        return cls(
            topic=data.get('topic') or 'general',
            message=data.get('message') or '',
            severity=data.get('severity') or 'info',
            body=data.get('body'),
            subject=data.get('subject'),
            context=dict(data.get('context') or {}),
            channels=[str(c) for c in channels] if channels else None,
            dedupe_key=data.get('dedupe_key') or data.get('dedupeKey'),
            timestamp=as_float(data.get('timestamp'), time.time()),
        )

    @property
    def key(self) -> str:
        return self.dedupe_key or f"{self.topic}|{self.severity}|{self.message}"

    def as_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'topic': self.topic,
            'severity': self.severity,
            'message': self.message,
            'body': self.body,
            'subject': self.subject,
            'context': self.context,
        }


def broker_failure_event(pair: str, error: str, operation: str = 'place_order') -> AlertEvent:
    # One alert per operation and pair inside the dedupe window, whatever the error text.
    return AlertEvent(
        topic='broker_failure',
        message=f'Broker {operation} failed for {pair}: {error}',
        severity='warning',
        context={'pair': pair, 'operation': operation, 'error': error},
        dedupe_key=f'broker_failure|{operation}|{pair}',
    )


ChannelSender = Callable[[AlertEvent], Awaitable[Any]]


class AlertBus:
    """Deduplicating fan-out of operational alerts to log, Slack, webhooks and email."""

    def __init__(
        self,
        settings: Optional[Mapping[str, Any]] = None,
        transport_overrides: Optional[Mapping[str, ChannelSender]] = None,
        clock=time.time,
    ):
        settings = dict(settings or {})
        self.dedupe_s = as_float(settings.get('dedupe_s'), 300.0, minimum=0.0)
        self.slack_webhook_url = settings.get('slack_webhook_url') or None
        self.webhook_urls = as_list(settings.get('webhook_urls'))
        self.http_timeout_s = as_float(settings.get('http_timeout_s'), 5.0, minimum=0.1)

        email = dict(settings.get('email') or {})
        smtp = dict(email.get('smtp') or {})
        self.email_from = email.get('from') or None
        self.email_to = as_list(email.get('to'))
        self.smtp_host = smtp.get('host') or None
        self.smtp_port = as_int(smtp.get('port'), 587)
        self.smtp_user = smtp.get('user') or None
        self.smtp_password = smtp.get('password') or None
        self.smtp_use_tls = bool(smtp.get('use_tls', False))
        self.smtp_start_tls = bool(smtp.get('start_tls', True))

        self.clock = clock
        self._recent: Dict[str, float] = {}
        self._transports: Dict[str, ChannelSender] = {'log': self._send_log}
        if self.slack_webhook_url:
            self._transports['slack'] = self._send_slack
        if self.webhook_urls:
            self._transports['webhook'] = self._send_webhooks
        if self.smtp_host and self.email_to and self.email_from:
            self._transports['email'] = self._send_email
        for channel, sender in (transport_overrides or {}).items():
            self._transports[str(channel)] = sender

    def available_channels(self) -> List[str]:
        return list(self._transports)

    async def publish(self, event: Union[AlertEvent, Mapping[str, Any]]) -> bool:
        if not isinstance(event, AlertEvent):
            event = AlertEvent.from_dict(event)
        if not event.message:
            return False

        now = self.clock()
        self._purge(now)
        key = event.key
        last = self._recent.get(key)
        if last is not None and now - last < self.dedupe_s:
            metrics.record_alert_deduped()
            logger.debug("Alert suppressed by dedupe: %s", key)
            return False
        self._recent[key] = now

        channels = self._resolve_channels(event)
        await asyncio.gather(*(self._dispatch(channel, event) for channel in channels))
        return True

    def _purge(self, now: float) -> None:
        expired = [key for key, seen in self._recent.items() if now - seen >= self.dedupe_s]
        for key in expired:
            del self._recent[key]

    def _resolve_channels(self, event: AlertEvent) -> List[str]:
        available = self.available_channels()
        if not event.channels:
            return available
        wanted = set(event.channels)
        return [channel for channel in available if channel in wanted]

    async def _dispatch(self, channel: str, event: AlertEvent) -> bool:
        sender = self._transports[channel]
        try:
            await sender(event)
        except Exception as exc:
            logger.error("[Alert] %s channel failed for %s: %s", channel, event.topic, exc)
            metrics.record_alert(channel, False)
            return False
        metrics.record_alert(channel, True)
        return True

    async def _send_log(self, event: AlertEvent) -> None:
        logger.log(
            _LOG_LEVELS[event.severity],
            "[Alert] %s: %s - %s",
            event.severity.upper(),
            event.topic,
            event.message,
        )

    async def _post_json(self, url: str, payload: Dict[str, Any]) -> None:
        async with aiohttp.ClientSession() as session:
            async with session.post(
                url,
                json=payload,
                headers={'Content-Type': 'application/json'},
                timeout=aiohttp.ClientTimeout(total=self.http_timeout_s),
            ) as response:
                if response.status >= 300:
                    raise RuntimeError(f"{url} responded with status {response.status}")

    async def _send_slack(self, event: AlertEvent) -> None:
        text = f"*[{event.severity.upper()}] {event.topic}*: {event.message}"
        if event.body:
            text = f"{text}\n{event.body}"
        await self._post_json(self.slack_webhook_url, {'text': text})

    async def _send_webhooks(self, event: AlertEvent) -> None:
        payload = event.as_dict()
        results = await asyncio.gather(
            *(self._post_json(url, payload) for url in self.webhook_urls),
            return_exceptions=True,
        )
        errors = [str(r) for r in results if isinstance(r, Exception)]
        if errors:
            raise RuntimeError('; '.join(errors))

    async def _send_email(self, event: AlertEvent) -> None:
        lines = [f"[{event.severity.upper()}] {event.topic}", '', event.message]
        if event.body:
            lines.extend(['', event.body])
        if event.context:
            lines.extend(['', 'Details:'])
            lines.extend(f"  - {key}: {value}" for key, value in event.context.items())

        message = MIMEText('\n'.join(lines), 'plain')
        message['Subject'] = event.subject or f"[{event.severity.upper()}] {event.topic}"
        message['From'] = self.email_from
        message['To'] = ', '.join(self.email_to)

        await aiosmtplib.send(
            message,
            hostname=self.smtp_host,
            port=self.smtp_port,
            username=self.smtp_user,
            password=self.smtp_password,
            use_tls=self.smtp_use_tls,
            start_tls=self.smtp_start_tls if not self.smtp_use_tls else False,
            timeout=self.http_timeout_s,
        )

    async def kill_switch_alert(self, reason: str) -> bool:
        return await self.publish(AlertEvent(
            topic='kill_switch',
            message=f'Kill switch engaged: {reason}',
            severity='critical',
            context={'reason': reason},
        ))

    async def broker_failure_alert(self, pair: str, error: str, operation: str = 'place_order') -> bool:
        return await self.publish(broker_failure_event(pair, error, operation))

    async def dead_letter_alert(self, job_id: str, job_type: str, error: Optional[str]) -> bool:
        return await self.publish(AlertEvent(
            topic='job_dead_letter',
            message=f'Job {job_type} exhausted its retries: {error or "unknown error"}',
            severity='critical',
            context={'job_id': job_id, 'type': job_type},
        ))
