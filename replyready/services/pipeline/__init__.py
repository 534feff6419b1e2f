"""Pipeline stage runners over the Message status state machine."""
