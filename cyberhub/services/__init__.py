"""Domain services built on the data-access client."""

from cyberhub.services.billing import billable_minutes, session_cost
from cyberhub.services.centers import CenterService
from cyberhub.services.commands import CommandService, CommandStatus, CommandType
from cyberhub.services.computers import ComputerService, ReconnectResult
from cyberhub.services.events import EventLog
from cyberhub.services.presence import PresenceMonitor
from cyberhub.services.pricing import PricingService
from cyberhub.services.sessions import SessionService
from cyberhub.services.users import AuthResult, UserService

__all__ = [
    "AuthResult",
    "CenterService",
    "CommandService",
    "CommandStatus",
    "CommandType",
    "ComputerService",
    "EventLog",
    "PresenceMonitor",
    "PricingService",
    "ReconnectResult",
    "SessionService",
    "UserService",
    "billable_minutes",
    "session_cost",
]
