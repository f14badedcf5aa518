"""
Signal sources (biometrics, calendar, weather) and the prompt lines derived from them.

Signals are read-only inputs; nothing here mutates them.
"""

from datetime import datetime, timedelta
from typing import List, Optional, Protocol, Sequence

from ..models.core import Signal
from ..utils.logging_config import get_logger
from ..utils.provider_registry import Registry
from ..utils.timestamp_utils import to_datetime, utc_now

logger = get_logger(__name__)

MAX_AGENDA_EVENTS = 5
WINDY_KMH = 15


class SignalSource(Protocol):
    id: str
    name: str

    def sync(self, since: Optional[datetime] = None) -> List[Signal]:
        ...


class SignalRegistry(Registry[SignalSource]):
    """Registered signal sources and the most recent synced signals."""

    def __init__(self):
        super().__init__()
        self.signals: List[Signal] = []

    def sync_all(self, since: Optional[datetime] = None) -> List[Signal]:
        """Pull from every source, newest first. A failing source is logged and skipped."""
        collected: List[Signal] = []
        for source in self.list():
            try:
                collected.extend(source.sync(since))
            except Exception as e:
                logger.warning(f'Signal sync failed for {source.id}: {e}')
        self.signals = sorted(collected, key=lambda s: s.timestamp, reverse=True)
        logger.debug(f'Synced {len(self.signals)} signals from {len(self)} sources')
        return self.signals


def latest_signal(signals: Sequence[Signal], type: Optional[str] = None, source: Optional[str] = None) -> Optional[Signal]:
    matching = [s for s in signals if (type is None or s.type == type) and (source is None or s.source == source)]
    return max(matching, key=lambda s: s.timestamp) if matching else None


def _time_of_day(hour: int) -> str:
    if hour < 12:
        return 'morning'
    if hour < 17:
        return 'afternoon'
    if hour < 21:
        return 'evening'
    return 'night'


def format_temporal(signals: Sequence[Signal] = (), now: Optional[datetime] = None, user_name: Optional[str] = None) -> str:
    """Current time lines, from the time source when present."""
    time_signal = latest_signal(signals, source='time')
    if time_signal is not None and time_signal.data.get('formattedTime'):
        data = time_signal.data
        text = (f'Current time: {data.get("dayOfWeek", "")}, {data.get("date", "")} at {data["formattedTime"]}\n'
                f'Timezone: {data.get("timezone", "UTC")}\nTime of day: {data.get("timeOfDay", "")}')
    else:
        now = now or utc_now()
        text = (f'Current time: {now.strftime("%A, %B %d, %Y")} at {now.strftime("%H:%M")}\n'
                f'Time of day: {_time_of_day(now.hour)}')
    if user_name:
        text += f"\nUser's name: {user_name}"
    return text


def format_weather(signals: Sequence[Signal]) -> Optional[str]:
    signal = latest_signal(signals, source='weather')
    if signal is None:
        return None
    data = signal.data
    if data.get('formatted'):
        return data['formatted']
    if 'temperature' not in data or 'condition' not in data:
        return None
    weather = f'{data["temperature"]}°C, {data["condition"]}'
    if (data.get('windSpeed') or 0) > WINDY_KMH:
        weather += f', windy ({data["windSpeed"]} km/h)'
    return weather


def format_capacity(signals: Sequence[Signal]) -> Optional[str]:
    """'Recovery: N% (hrv status)' from the latest recovery signal."""
    signal = latest_signal(signals, type='recovery')
    if signal is None or signal.data.get('recoveryScore') is None:
        return None
    capacity = f'Recovery: {signal.data["recoveryScore"]}%'
    if signal.data.get('hrvStatus'):
        capacity += f' ({signal.data["hrvStatus"]})'
    return capacity


def today_events(signals: Sequence[Signal], now: Optional[datetime] = None) -> List[Signal]:
    now = now or utc_now()
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    end = start + timedelta(days=1)
    events = []
    for signal in signals:
        if signal.type != 'event' or not signal.data.get('startTime'):
            continue
        starts = to_datetime(signal.data['startTime'])
        if start <= starts < end:
            events.append((starts, signal))
    return [signal for _, signal in sorted(events, key=lambda item: item[0])]


def format_agenda(events: Sequence[Signal]) -> Optional[str]:
    if not events:
        return None
    lines = []
    for event in events[:MAX_AGENDA_EVENTS]:
        data = event.data
        when = data.get('formattedTime') or to_datetime(data['startTime']).strftime('%H:%M')
        line = f'- {when}: {data.get("title", "Untitled event")}'
        if data.get('hasVideoCall'):
            line += ' (video call)'
        if data.get('attendeeCount'):
            line += f' ({data["attendeeCount"]} attendees)'
        lines.append(line)
    return "Today's agenda:\n" + '\n'.join(lines)
