"""
Realtime hub: which connection watches which profile, and fan-out of
state-change events to them.

The hub does not know about Socket.IO. It is handed two callables:
``send(sid, message)`` delivers one JSON-able message to a connection and
``close(sid)`` terminates it. The Flask app wires those to Socket.IO;
tests pass fakes.
"""
import logging
import threading
import time
from dataclasses import dataclass

from .auth import Role
from .profiles import sanitize_profile, utc_stamp

logger = logging.getLogger(__name__)

UNAUTHORIZED = {'error': 'unauthorized'}


# ==============================================================================
# SERVER -> CLIENT EVENTS
# ==============================================================================

def config_event(profile, config, role=None):
    event = {'type': 'config', 'profile': profile, 'config': config}
    if role is not None:
        event['role'] = role.value if isinstance(role, Role) else role
    return event


def leaderboard_event(profile, stats):
    return {'type': 'leaderboard', 'profile': profile, 'stats': stats}


def spin_event(profile, index, label, user, test, ts=None):
    return {
        'type': 'spin',
        'profile': profile,
        'index': index,
        'label': label,
        'user': user,
        'test': test,
        'ts': ts or utc_stamp(),
    }


def preview_flash_event(profile):
    return {'type': 'previewFlash', 'profile': profile}


@dataclass(frozen=True)
class Subscription:
    profile: str
    role: Role
    since: float


class RealtimeHub:
    """
    Registry of ``sid -> Subscription`` plus broadcast.

    A connection is either unsubscribed (absent from the registry) or
    subscribed to exactly one profile. Subscribing again replaces the
    previous association.
    """

    def __init__(self, store, authorizer, send, close):
        self.store = store
        self.authorizer = authorizer
        self._send = send
        self._close = close
        self._subscriptions = {}
        self._lock = threading.Lock()
        self.metrics = {
            'start_time': time.time(),
            'total_subscriptions': 0,
            'rejected_subscriptions': 0,
            'peak_concurrent': 0,
            'events_broadcast': 0,
        }

    # ------------------------------------------------------------------
    # subscription lifecycle
    # ------------------------------------------------------------------

    def subscribe(self, sid, profile_name, token=None, admin_pass=None):
        """Authorize ``sid`` for a profile and push it a full snapshot.

        Returns the granted Role. On failure the connection receives
        ``{"error": "unauthorized"}``, is closed, and Role.NONE is returned.
        """
        self.unsubscribe(sid)
        profile = sanitize_profile(profile_name)

        role = self.authorizer.resolve(self.store.get_token(profile), token, admin_pass)
        if role is Role.NONE:
            with self._lock:
                self.metrics['rejected_subscriptions'] += 1
            logger.warning(f"🚫 Subscribe rejected: {sid} -> '{profile}'")
            self._deliver(sid, UNAUTHORIZED)
            self._terminate(sid)
            return Role.NONE

        profile = self.store.ensure(profile)
        config = self.store.get_config(profile)
        stats = self.store.get_leaderboard(profile)

        with self._lock:
            self._subscriptions[sid] = Subscription(profile, role, time.time())
            self.metrics['total_subscriptions'] += 1
            self.metrics['peak_concurrent'] = max(
                len(self._subscriptions), self.metrics['peak_concurrent']
            )
            total = len(self._subscriptions)

        logger.info(f"🔌 {sid} subscribed to '{profile}' as {role.value} (Total: {total})")
        self._deliver(sid, config_event(profile, config, role))
        self._deliver(sid, leaderboard_event(profile, stats))
        return role

    def unsubscribe(self, sid):
        with self._lock:
            subscription = self._subscriptions.pop(sid, None)
        if subscription:
            logger.debug(f"🔌 {sid} left '{subscription.profile}'")
        return subscription

    def subscription(self, sid):
        with self._lock:
            return self._subscriptions.get(sid)

    def subscribers(self, profile):
        profile = sanitize_profile(profile)
        with self._lock:
            return [sid for sid, sub in self._subscriptions.items() if sub.profile == profile]

    def evict(self, profile, role):
        """Drop every subscription of ``role`` on ``profile``, telling them why"""
        profile = sanitize_profile(profile)
        with self._lock:
            targets = [
                sid for sid, sub in self._subscriptions.items()
                if sub.profile == profile and sub.role is role
            ]
            for sid in targets:
                del self._subscriptions[sid]

        for sid in targets:
            self._deliver(sid, UNAUTHORIZED)
            self._terminate(sid)
        if targets:
            logger.info(f"🚪 Evicted {len(targets)} {role.value} subscriber(s) from '{profile}'")
        return targets

    def reap(self, is_alive):
        """Forget registrations whose connection ``is_alive(sid)`` reports gone"""
        with self._lock:
            dead = [sid for sid in self._subscriptions if not is_alive(sid)]
            for sid in dead:
                del self._subscriptions[sid]
        if dead:
            logger.info(f"🧹 Reaped {len(dead)} dead subscription(s)")
        return dead

    # ------------------------------------------------------------------
    # delivery
    # ------------------------------------------------------------------

    def broadcast(self, event):
        """Send ``event`` to every subscriber of ``event['profile']``.

        Best-effort: a failing connection is logged and skipped. Returns the
        number of successful deliveries.
        """
        targets = self.subscribers(event['profile'])
        delivered = sum(1 for sid in targets if self._deliver(sid, event))
        with self._lock:
            self.metrics['events_broadcast'] += 1
        logger.debug(
            f"📡 {event.get('type')} -> '{event['profile']}' ({delivered}/{len(targets)} delivered)"
        )
        return delivered

    def _deliver(self, sid, message):
        try:
            self._send(sid, message)
            return True
        except Exception as e:
            logger.debug(f"Send to {sid} failed: {e}")
            return False

    def _terminate(self, sid):
        try:
            self._close(sid)
        except Exception as e:
            logger.debug(f"Close of {sid} failed: {e}")

    def stats(self):
        with self._lock:
            by_profile = {}
            for sub in self._subscriptions.values():
                by_profile[sub.profile] = by_profile.get(sub.profile, 0) + 1
            return {
                'connected': len(self._subscriptions),
                'profiles': by_profile,
                'uptime_hours': round((time.time() - self.metrics['start_time']) / 3600, 2),
                **{k: v for k, v in self.metrics.items() if k != 'start_time'},
            }
