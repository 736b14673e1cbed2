"""Domain services. Each module takes its session explicitly."""
