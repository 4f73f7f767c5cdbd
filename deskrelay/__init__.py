"""Real-time synchronization core for the support desk."""
