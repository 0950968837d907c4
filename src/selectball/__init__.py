from selectball.api import BurstSession
from selectball.config import Config, Crop, RegistrationParams, RunArgs
from selectball.highlight import locate_highlight
from selectball.lightsource import intersection, light_dir
from selectball.registration import register, register_burst

__all__ = [
    "BurstSession",
    "Config",
    "Crop",
    "RegistrationParams",
    "RunArgs",
    "intersection",
    "light_dir",
    "locate_highlight",
    "register",
    "register_burst",
]
