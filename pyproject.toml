[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "streamlink_daemon"
version = "1.0.0"
description = "Stream daemon settings, a framed TCP packet protocol, stoppable worker threads and a control/video TCP server"
requires-python = ">=3.10"
dependencies = []
keywords = ["streaming", "rtsp", "rtp", "h264", "h265", "tcp", "video", "packet-protocol"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Multimedia :: Video",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["streamlink_daemon"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]
