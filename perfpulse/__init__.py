"""PerfPulse - website performance testing service."""

__version__ = "0.1.0"
