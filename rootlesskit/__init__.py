"""Building blocks for rootless containers on Linux: port specs and drivers, subordinate ID maps, state-directory locks, cgroup2 evacuation and signal forwarding."""

__version__ = "2.0.1+dev"