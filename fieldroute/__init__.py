"""
Field route scheduler package.
Weather-aware job scheduling and route sequencing for field-service crews.
"""

__version__ = "0.1.0"

from .service import SchedulingService
from .models import *
from .schemas import *

__all__ = [
    "SchedulingService"
]
