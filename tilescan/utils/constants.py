"""module to hold constants used throughout the project"""
import os
import platform
import logging

system_type = platform.system().lower()

PROGRAM_NAME = "tilescan"

# Pixel size of one tile as served by the default tile server.  Stitching
# relies on this, decoded images are never used to infer it.
TILE_SIZE = 1000

# Web Mercator stops short of the poles
MAX_LATITUDE = 85.0511287798066

# Batch directories are named after the UTC start of the batch
BATCH_TIME_FORMAT = "%Y-%m-%dT%H-%M-%SZ"

MANIFEST_FILENAME = "manifest.json"
STITCHED_FILENAME = "stitched.png"

# Placeholder tiles are fully transparent
PLACEHOLDER_COLOR = (0, 0, 0, 0)

DATA_DIR = os.path.join(os.path.expanduser("~"), ".tilescan-data")
LOGS_DIR = os.path.join(DATA_DIR, "logs")

# Below DEBUG, used for response headers and other very chatty output
TRACE = 5
logging.addLevelName(TRACE, "TRACE")
