"""Coverline carriers package — carrier registry, matching and quote fan-out.

- :class:`CarrierDirectory` — hot-reloadable registry of carrier profiles
- :class:`CarrierMatcher` — filters and ranks carriers for an applicant
- :class:`CarrierGateway` — concurrent quote requests with failure isolation
- :class:`SimulatedCarrierNetwork` — deterministic in-process carrier endpoints
"""

from coverline.carriers.directory import CarrierDirectory, CarrierProfile, DirectorySnapshot
from coverline.carriers.matcher import CarrierMatch, CarrierMatcher
from coverline.carriers.gateway import CarrierFailure, CarrierGateway, GatewayResult
from coverline.carriers.simulator import SimulatedCarrierNetwork

__all__ = [
    "CarrierDirectory",
    "CarrierProfile",
    "DirectorySnapshot",
    "CarrierMatch",
    "CarrierMatcher",
    "CarrierGateway",
    "CarrierFailure",
    "GatewayResult",
    "SimulatedCarrierNetwork",
]
