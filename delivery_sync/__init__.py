"""Client-side order lifecycle synchronization for the delivery dashboards."""

__version__ = "1.0.0"
