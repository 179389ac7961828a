from .carriers import CARRIERS, COLORS, CarrierConfig, CarrierConfigError, CarrierDevice, CarrierType
from .yarnstack import BackAction, YarnStack, as_back_bits, as_front_bits, as_yarn_list

__all__ = [
    "CARRIERS",
    "COLORS",
    "CarrierConfig",
    "CarrierConfigError",
    "CarrierDevice",
    "CarrierType",
    "BackAction",
    "YarnStack",
    "as_back_bits",
    "as_front_bits",
    "as_yarn_list",
]
