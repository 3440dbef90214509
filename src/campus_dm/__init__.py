"""Direct messaging between students of the campus task board."""

__version__ = "0.1.0"
