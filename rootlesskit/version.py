"""Version of the package."""

VERSION = "2.0.1+dev"