"""Building blocks for declarative package builds: configuration, lifecycle stages, sources, dependency graphs and scheduling."""

__version__ = "1.2.4"