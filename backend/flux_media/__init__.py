"""Flux Media: automatic WebP/AVIF image and AV1/WebM video optimization."""
