"""SQLAlchemy ORM models."""

# Import all models so Base.metadata registers them for create_all().
from edgefleet.models.device import Device as Device
from edgefleet.models.device import DeviceState as DeviceState
from edgefleet.models.task import DeviceTask as DeviceTask
from edgefleet.models.task import TaskStatus as TaskStatus
from edgefleet.models.task import TaskType as TaskType
