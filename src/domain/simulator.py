"""Ambulance simulator: a stand-in GPS for drivers without a device feed."""

from __future__ import annotations

from typing import Optional

from .distance import planar_step
from .entities import Coordinate, DriverPosition, utcnow

# Connaught Place, New Delhi
DEFAULT_START = Coordinate(28.7041, 77.1025)


class AmbulanceSimulator:
    """Moves a fixed number of degrees towards a target on every tick."""

    def __init__(
        self,
        driver_id: str,
        start: Coordinate = DEFAULT_START,
        step_degrees: float = 0.001,
    ):
        self.driver_id = driver_id
        self.step_degrees = step_degrees
        self.position = start
        self.target: Optional[Coordinate] = None

    def set_target(self, target: Coordinate) -> None:
        self.target = target

    @property
    def arrived(self) -> bool:
        return self.target is not None and self.position == self.target

    def tick(self) -> DriverPosition:
        if self.target is not None:
            lat, lng = planar_step(
                self.position.latitude,
                self.position.longitude,
                self.target.latitude,
                self.target.longitude,
                self.step_degrees,
            )
            self.position = Coordinate(lat, lng)
        return DriverPosition(
            driver_id=self.driver_id,
            latitude=self.position.latitude,
            longitude=self.position.longitude,
            timestamp=utcnow(),
        )

    async def read(self) -> DriverPosition:
        return self.tick()
