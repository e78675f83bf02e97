"""Election of the reference piece that defines a group's mapping."""

from __future__ import annotations

import math
from typing import Collection, Mapping, Optional, Tuple

from .groups import ConstructionGroup, PieceTrack
from .tracker import PieceState, ValidationStatus


class AnchorSelector:
    """Prefer validated pieces, then achiral, settled and long-dwelling ones, then central ones."""

    def __init__(self, settle_speed: float = 12.0) -> None:
        if settle_speed < 0:
            raise ValueError(f"settle_speed must be >= 0, got {settle_speed}")
        self.settle_speed = float(settle_speed)

    def select(
        self,
        group: ConstructionGroup,
        tracks: Mapping[str, PieceTrack],
        states: Mapping[str, PieceState],
        eligible: Collection[str],
        now: float,
    ) -> Optional[str]:
        """Return the anchor id for ``group`` or ``None`` when no member can anchor."""
        candidates = [pid for pid in sorted(group.members) if pid in eligible]
        if not candidates:
            return None

        points = [tracks[pid].observation.position for pid in group.members]
        cx = sum(p[0] for p in points) / len(points)
        cy = sum(p[1] for p in points) / len(points)

        def key(pid: str) -> Tuple[bool, bool, bool, float, float, str]:
            track = tracks[pid]
            state = states.get(pid)
            validated = state is not None and state.status is ValidationStatus.VALIDATED
            # Among equally trusted pieces the chiral one anchors last.
            chiral = track.observation.piece_type.is_mirrorable
            settled = track.speed <= self.settle_speed
            position = track.observation.position
            return (
                not validated,
                chiral,
                not settled,
                -track.dwell(now),
                math.hypot(position[0] - cx, position[1] - cy),
                pid,
            )

        return min(candidates, key=key)
