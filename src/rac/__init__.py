"""Remote access control daemon: device authorization and tunnel supervision."""

__version__ = "0.1.0"
