"""ORB descriptor matching and EPnP camera pose estimation for visual SLAM."""

__version__ = "0.1.0"

__all__ = ["matching", "bow_matching", "projection_matching", "epnp"]