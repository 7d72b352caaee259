"""Device lifecycle management: connection state machine and its events."""
