"""pipeslicer - container registry control-plane."""

__version__ = "0.4.0"
