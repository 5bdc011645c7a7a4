"""Fleet stress client — simulates many devices against a device-management backend."""

__version__ = "0.1.0"
