"""
Safety signals - blinker namespace for safety monitor events.

Senders are SafetyMonitor instances, so receivers can subscribe to one
session's monitor with ``signal.connect(receiver, sender=monitor)``.

Signals and their keyword payloads:
    disable_ai:          trigger_id, reason, timestamp
    disable_progressive: trigger_id, reason, timestamp
    emergency_mode:      trigger_id, reason, timestamp, metrics
    rollback:            trigger_id, snapshot (SnapshotView or None), timestamp
"""

from blinker import Namespace

safety_signals = Namespace()

disable_ai = safety_signals.signal('safety:disable-ai')
disable_progressive = safety_signals.signal('safety:disable-progressive')
emergency_mode = safety_signals.signal('safety:emergency-mode')
rollback = safety_signals.signal('safety:rollback')
