"""
nnbench package
~~~~~~~~~~~~~~~

Neural network configuration benchmarker.
Contains the numpy training engine (tensors, layers, networks, optimizers),
the parallel benchmark harness with streaming statistics, and the loaders,
reporting and SQLite persistence around them.
"""

__version__ = "1.0.0"
