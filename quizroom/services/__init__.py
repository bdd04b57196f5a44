"""Quiz domain services: commands, scoring, sessions and the sweeper.

This package holds the room logic that HTTP routes and socket handlers call
into, keeping transport concerns separated from the game rules.
"""
