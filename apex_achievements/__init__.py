"""Achievement, points and leaderboard engine for Apex Academy."""

__version__ = "0.1.0"
