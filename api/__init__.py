"""HTTP control surface for the coordinator."""
