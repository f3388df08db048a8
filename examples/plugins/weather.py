"""Weather plugin: fetches forecasts through the network.request capability.

Drop this file into ~/.plugkeep/plugins/ and allow its destination in
plugkeep.yaml:

    overrides:
      weather:
        allowedNetworkDestinations: ["api.open-meteo.com"]
        maxNetworkRequestsPerWindow: 30
"""

from typing import Any

from plugkeep.plugins.base import Plugin

PLUGIN_META = {
    "name": "weather",
    "version": "1.0.0",
    "description": "Current temperature for a coordinate",
    "author": "plugkeep",
    "capabilities": ["forecast"],
    "permissions": ["network.request"],
}

FORECAST_URL = "https://api.open-meteo.com/v1/forecast"


class WeatherPlugin(Plugin):
    async def load(self, config: dict[str, Any]) -> None:
        self.units = config.get("units", "celsius")
        self.last: dict[str, Any] | None = None

    async def forecast(self, latitude: float, longitude: float) -> dict[str, Any] | None:
        response = await self.context.call(
            "network.request",
            "get",
            {
                "url": FORECAST_URL,
                "params": {
                    "latitude": latitude,
                    "longitude": longitude,
                    "current_weather": "true",
                    "temperature_unit": self.units,
                },
            },
        )
        if not response.success:
            self.context.logger.warning("Forecast failed: %s", response.error.message)
            return None

        self.last = {"status": response.payload["status"], "body": response.payload["body"]}
        return self.last

    def export_state(self) -> dict[str, Any]:
        return {"last": self.last}

    def import_state(self, state: dict[str, Any]) -> None:
        self.last = state.get("last")
