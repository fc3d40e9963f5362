"""
Sensor classification: raw chair reading -> occupancy state and position
"""

import logging
import math
from typing import Any, Mapping, Optional, Union

from pydantic import ValidationError

from errors import ClassificationError
from models import SensorReading, Classification, ChairState, Position

logger = logging.getLogger(__name__)


POSITION_WARNINGS = {
    Position.LEANING_LEFT: "You are leaning too much to the left. Try to balance your weight.",
    Position.LEANING_RIGHT: "You are leaning too much to the right. Try to balance your weight.",
    Position.FORWARD_SLOUCH: "You are slouching forward. Try to sit up straight.",
    Position.SLOUCHING_BACK: "You are slouching back. Try to maintain an upright posture.",
    Position.IRREGULAR: "Your sitting position is irregular. Try to maintain a consistent posture.",
}

UNKNOWN = Classification(state=ChairState.UNKNOWN, position=Position.UNKNOWN)


def parse_reading(raw: Union[SensorReading, Mapping[str, Any]]) -> SensorReading:
    """
    Validate a raw reading.

    Raises:
        ClassificationError: reading is malformed or has no weight
    """
    if isinstance(raw, SensorReading):
        reading = raw
    else:
        try:
            reading = SensorReading.model_validate(raw)
        except (ValidationError, TypeError) as e:
            raise ClassificationError(f"Malformed reading: {e}") from e

    if reading.weight is None or math.isnan(reading.weight):
        raise ClassificationError("Reading has no usable weight")
    return reading


def sitting_position(left_arm: bool, right_arm: bool, left_leg: bool, right_leg: bool) -> Position:
    """
    Decision table for a person sitting (at least one contact active).

    - all four contacts -> Balanced
    - left arm and leg, right side not both -> Leaning Left (and mirrored)
    - legs only -> Forward Slouch (more weight on legs)
    - arms only -> Slouching Back (more weight on arms)
    - anything else -> Irregular (fidgeting or shifting)
    """
    if left_arm and right_arm and left_leg and right_leg:
        return Position.BALANCED

    if left_arm and left_leg and not (right_arm and right_leg):
        return Position.LEANING_LEFT

    if right_arm and right_leg and not (left_arm and left_leg):
        return Position.LEANING_RIGHT

    if not left_arm and not right_arm and left_leg and right_leg:
        return Position.FORWARD_SLOUCH

    if left_arm and right_arm and not left_leg and not right_leg:
        return Position.SLOUCHING_BACK

    return Position.IRREGULAR


def classify(raw: Union[SensorReading, Mapping[str, Any]]) -> Classification:
    """
    Classify a reading into (state, position).

    Pure and deterministic. Malformed readings map to Unknown instead of
    raising, so a bad frame never stops monitoring.
    """
    try:
        reading = parse_reading(raw)
    except ClassificationError as e:
        logger.debug("Unclassifiable reading: %s", e)
        return UNKNOWN

    if reading.weight <= 0:
        return Classification(state=ChairState.ABSENT, position=Position.EMPTY)

    contacts = (
        bool(reading.left_arm),
        bool(reading.right_arm),
        bool(reading.left_leg),
        bool(reading.right_leg),
    )

    if not any(contacts):
        # Weight without limb contact is an object on the seat
        return Classification(state=ChairState.OBJECT_PLACED, position=Position.OBJECT_PLACED)

    return Classification(state=ChairState.SITTING, position=sitting_position(*contacts))


def position_warning(position: Position) -> Optional[str]:
    """Corrective advice for a non-balanced sitting position"""
    return POSITION_WARNINGS.get(position)
