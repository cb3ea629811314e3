"""
ClassGate - internet-access policy server for school device fleets.

Issues the token chain that takes a classroom device from installer to
registered identity, and serves each device its whitelist and agent
updates over tokenized, cache-validated endpoints.
"""

__version__ = "0.1.0"
__author__ = "ClassGate Contributors"

from classgate.config import ClassGateConfig, load_config

__all__ = ["ClassGateConfig", "load_config", "__version__"]
