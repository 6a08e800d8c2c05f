"""habitcircle: habit tracking API with streaks, follows and a leaderboard."""

__version__ = "0.1.0"
