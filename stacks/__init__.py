"""
CDK stacks for the EventBridge / ECS fan-out
"""

from .config import FanoutConfig, ImageSource, TriggerMode
from .fanout_stack import EventbridgeEcsFanoutStack

__all__ = [
    "EventbridgeEcsFanoutStack",
    "FanoutConfig",
    "ImageSource",
    "TriggerMode",
]
