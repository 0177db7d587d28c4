"""Visual SLAM building blocks: ORB features, two-view geometry, pose estimation, tracking and bundle adjustment."""

__version__ = "0.1.0"