"""Pydantic schemas for request/response validation."""

from .booking import *  # noqa: F403
from .common import *  # noqa: F403
from .health import *  # noqa: F403
from .schedule import *  # noqa: F403
from .slots import *  # noqa: F403
from .waitlist import *  # noqa: F403
