"""Post-deploy validation and restart decisions."""
