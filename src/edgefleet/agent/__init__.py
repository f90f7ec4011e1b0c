"""Device-side runtime: bootstrap enrollment, then poll and execute tasks."""
