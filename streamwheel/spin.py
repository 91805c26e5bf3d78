"""Spin resolution: pick a segment, record it, score it, announce it."""
import logging
import math
import random
from dataclasses import dataclass
from typing import Optional, Union

from .auth import Role
from .hub import leaderboard_event, spin_event
from .profiles import sanitize_profile

logger = logging.getLogger(__name__)

UNKNOWN_LABEL = '(unknown)'


@dataclass
class SpinRequest:
    index: Optional[Union[int, float]] = None
    label: Optional[str] = None
    test: bool = False
    user: Optional[str] = None
    role: Role = Role.NONE

    @classmethod
    def from_json(cls, body, role=Role.NONE):
        """Build a request from a JSON body, dropping mistyped fields"""
        body = body if isinstance(body, dict) else {}
        index = body.get('index')
        if isinstance(index, bool) or not isinstance(index, (int, float)):
            index = None
        elif isinstance(index, float):
            # fractional indexes are kept and resolve to the unknown label
            if not math.isfinite(index):
                index = None
            elif index.is_integer():
                index = int(index)
        label = body.get('label')
        user = body.get('user')
        return cls(
            index=index,
            label=label if isinstance(label, str) and label else None,
            test=bool(body.get('test')),
            user=user if isinstance(user, str) and user else None,
            role=role,
        )


def segment_label(segments, index):
    """Label at ``index``, or None when out of range (negatives and fractions included)"""
    if isinstance(index, int) and 0 <= index < len(segments):
        label = segments[index].get('label')
        return label or None
    return None


class SpinEngine:
    def __init__(self, store, hub, rng=None):
        self.store = store
        self.hub = hub
        self.rng = rng or random.SystemRandom()

    def spin(self, profile, request):
        """
        Resolve one spin and return the broadcast ``spin`` payload.

        Durable writes (log line, leaderboard for scored spins) happen
        first; a storage failure propagates before anything is broadcast.
        """
        profile = self.store.ensure(sanitize_profile(profile))
        segments = self.store.get_config(profile).get('segments') or []

        if request.index is not None:
            index = request.index
        elif segments:
            index = self.rng.randrange(len(segments))
        else:
            index = 0

        label = request.label or segment_label(segments, index) or UNKNOWN_LABEL
        user = request.user or ('Admin' if request.role.is_admin else 'Viewer')

        self.store.append_log(profile, f"{user} -> {label}{' [TEST]' if request.test else ''}")

        stats = None
        if not request.test:
            stats = self.store.increment_leaderboard(profile, label)

        logger.info(
            f"🎲 Spin on '{profile}' by {user}: #{index} -> '{label}'{' (test)' if request.test else ''}"
        )

        if stats is not None:
            self.hub.broadcast(leaderboard_event(profile, stats))
        payload = spin_event(profile, index, label, user, request.test)
        self.hub.broadcast(payload)
        return payload
