"""shellquest - a mission-driven Linux shell trainer.

A simulated shell (virtual filesystem, ~25 commands, redirection, sudo, ssh)
paired with adventures whose tasks are checked after every command.
"""
