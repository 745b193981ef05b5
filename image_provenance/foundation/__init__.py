"""Project-agnostic building blocks: config file IO, process execution, logging."""
