[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vslam"
version = "0.1.0"
description = "Visual SLAM building blocks: ORB features, epipolar geometry, PnP/ICP, optical flow, direct method and bundle adjustment"
requires-python = ">=3.10"
keywords = [
    "slam",
    "visual-odometry",
    "computer-vision",
    "orb",
    "optical-flow",
    "bundle-adjustment",
    "epipolar-geometry",
    "lie-groups",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Image Processing",
    "Topic :: Scientific/Engineering :: Mathematics",
]
dependencies = [
    "numpy",
    "scipy",
    "pillow",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
vslam-orb = "vslam.orb:main"
vslam-match = "vslam.matching:main"
vslam-ba-ceres = "vslam.reprojection:main"
vslam-ba-g2o = "vslam.bundle_adjustment:main"

[tool.hatch.build.targets.wheel]
packages = ["vslam"]

[tool.pytest.ini_options]
addopts = "-ra"
