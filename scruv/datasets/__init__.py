"""Synthetic datasets for examples and testing.

>>> from scruv.datasets import ruv_simulate
>>> sim = ruv_simulate(m=200, n=1000, nc=100, random_state=0)
"""

from scruv.datasets.simulate import RuvSimulation, ruv_simulate

__all__ = ["RuvSimulation", "ruv_simulate"]
