"""Value mapping: resolution, transforms, dropdown matching and pre-flight planning."""
