"""Chain gateway -- the EscrowFactory relayer and its webhook payloads."""
