"""Domain types shared by the gate, sandbox, and scheduler. Free of IO side effects."""
