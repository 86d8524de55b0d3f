"""Core building blocks for the rating / projection / edge engine.

This package contains pure, sport-agnostic pieces:

- ``odds_math``    : American/decimal conversion, payouts, breakeven, EV
- ``model_config`` : frozen, versioned constants and the acceptance registry
- ``errors``       : LeakageViolation and the other engine exceptions
- ``temporal``     : strict-before checks applied to every prediction input
- ``settings``     : environment-driven runtime settings and logging setup

Nothing in this package imports from ``edge_engine.services`` or
``edge_engine.models``.
"""
