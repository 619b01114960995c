"""shcsync - sync Bosch Smart Home Controller (SHC) data to an EMS-ESP device."""

__version__ = "0.1.0"
