[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "slamtools"
version = "0.1.0"
description = "Visual odometry and bundle adjustment building blocks: ORB features, two-view geometry, ICP, PnP, optical flow, direct method and BAL bundle adjustment."
requires-python = ">=3.10"
dependencies = [
    "numpy",
    "scipy",
]
keywords = [
    "slam",
    "visual-odometry",
    "bundle-adjustment",
    "orb",
    "optical-flow",
    "pnp",
    "icp",
    "computer-vision",
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

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
slamtools-ba = "slamtools.bundle_adjustment:main"

[tool.hatch.build.targets.wheel]
packages = ["slamtools"]

[tool.pytest.ini_options]
addopts = "-ra"
