from selectball.api.session import BurstSession, ChannelResult, LightRay

__all__ = [
    "BurstSession",
    "ChannelResult",
    "LightRay",
]
