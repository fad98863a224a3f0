"""Host positioning runtimes that satisfy `fleet_agent.acquisition.LocationPlatform`."""

from .simulated import SimulatedPlatform, SimulatedRoute

__all__ = ["SimulatedPlatform", "SimulatedRoute"]
