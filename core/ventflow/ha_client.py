"""
Simple Home Assistant API Client for Ventflow

Minimal client for reading vent/room sensors and positioning vent covers.
"""

import logging
from typing import Any

import requests

from .exceptions import HAConnectionError, SensorError

logger = logging.getLogger(__name__)

TRUTHY_STATES = {"on", "true", "home", "open", "1"}


class HAClient:
    """Simple Home Assistant REST API client."""

    def __init__(self, base_url: str, token: str, timeout: float = 5):
        """Initialize HA client.

        Args:
            base_url: Home Assistant URL (e.g., "http://supervisor/core")
            token: Long-lived access token
            timeout: Per-request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        # Create a session for connection pooling
        self.session = requests.Session()
        self.session.headers.update(self.headers)
        self.timeout = timeout

    def get_state(self, entity_id: str) -> dict[str, Any]:
        """Get current state of an entity.

        Args:
            entity_id: Entity ID (e.g., "sensor.temperature")

        Returns:
            State dictionary with 'state', 'attributes', etc.

        Raises:
            SensorError: If entity not found
            HAConnectionError: If API request fails
        """
        url = f"{self.base_url}/api/states/{entity_id}"
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.HTTPError as e:
            if e.response is not None and e.response.status_code == 404:
                raise SensorError(f"Entity not found: {entity_id}") from e
            raise HAConnectionError(f"Failed to get state for {entity_id}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise HAConnectionError(f"HA API request failed: {e}") from e

    def get_temperature(self, entity_id: str) -> float:
        """Get temperature from a sensor or climate entity.

        Handles both:
        - sensor.xyz (temperature in state)
        - climate.xyz (temperature in attributes.current_temperature)

        Raises:
            SensorError: If temperature cannot be read
        """
        state = self.get_state(entity_id)

        if entity_id.startswith("climate."):
            try:
                return float(state["attributes"]["current_temperature"])
            except (ValueError, KeyError, TypeError) as e:
                raise SensorError(
                    f"Cannot read current_temperature from climate entity {entity_id}: {e}"
                ) from e

        try:
            return float(state["state"])
        except (ValueError, KeyError, TypeError) as e:
            raise SensorError(f"Cannot read temperature from {entity_id}: {e}") from e

    def get_number(self, entity_id: str) -> float:
        """Numeric state of an input_number / number / sensor entity."""
        state = self.get_state(entity_id)
        try:
            return float(state["state"])
        except (ValueError, KeyError, TypeError) as e:
            raise SensorError(f"Non-numeric state for {entity_id}: {e}") from e

    def get_bool(self, entity_id: str) -> bool:
        """On/off state of a binary_sensor / input_boolean / switch."""
        state = self.get_state(entity_id)
        return str(state.get("state", "")).lower() in TRUTHY_STATES

    def get_cover_position(self, entity_id: str) -> int:
        """Current open percentage (0-100) of a vent cover."""
        state = self.get_state(entity_id)
        position = state.get("attributes", {}).get("current_position")
        if position is None:
            raise SensorError(f"Cover {entity_id} does not report current_position")
        return int(position)

    def set_cover_position(self, entity_id: str, position: int) -> None:
        """Command a vent cover to an open percentage.

        Raises:
            HAConnectionError: If service call fails
        """
        url = f"{self.base_url}/api/services/cover/set_cover_position"
        data = {
            "entity_id": entity_id,
            "position": int(position),
        }

        try:
            logger.debug(f"Calling {url} with data: {data}")
            response = self.session.post(url, json=data, timeout=self.timeout)
            response.raise_for_status()
            logger.info(f"Set {entity_id} to {position}%")
        except requests.exceptions.RequestException as e:
            raise HAConnectionError(f"Failed to set position for {entity_id}: {e}") from e

    def get_climate_state(self, entity_id: str) -> dict[str, Any]:
        """Get thermostat state.

        Returns:
            Dictionary with hvac_mode, hvac_action and setpoints
        """
        state = self.get_state(entity_id)
        attrs = state.get("attributes", {})

        return {
            "entity_id": entity_id,
            "hvac_mode": state.get("state"),
            "hvac_action": attrs.get("hvac_action"),
            "current_temperature": attrs.get("current_temperature"),
            "target_temperature": attrs.get("temperature"),
            "target_temp_high": attrs.get("target_temp_high"),
            "target_temp_low": attrs.get("target_temp_low"),
        }
