"""
Measure logic compilation and evaluation engine.

Compiles the UMS logic tree of a clinical quality measure into CQL and SQL,
layers reviewer overrides on the generated code, and evaluates synthetic
patients against the population funnel.
"""

__version__ = "0.1.0"
