"""
Constants for the geo-loader ingestion pipeline.

This module defines all constant values used throughout the pipeline,
including binary format codes, parser limits, coordinate system envelopes,
detection thresholds, streaming and preview defaults.
"""

# ============================================================================
# Feature Model
# ============================================================================

# Layer assigned to features whose source format carries no layer information
DEFAULT_LAYER = "0"

GEOMETRY_TYPES = (
    "Point",
    "LineString",
    "Polygon",
    "MultiPoint",
    "MultiLineString",
    "MultiPolygon",
    "GeometryCollection",
)

POINT_TYPES = ("Point", "MultiPoint")
LINE_TYPES = ("LineString", "MultiLineString")
POLYGON_TYPES = ("Polygon", "MultiPolygon")

# Minimum vertex counts for non-degenerate geometry
MIN_LINE_POINTS = 2
MIN_RING_POINTS = 4

# Provenance keys written onto transformed features
PROP_FROM_SYSTEM = "_fromSystem"
PROP_TO_SYSTEM = "_toSystem"
PROP_TRANSFORMED = "_transformed"
PROP_TRANSFORMED_COORDINATES = "_transformedCoordinates"

# ============================================================================
# Shapefile (ESRI) Binary Layout
# ============================================================================

SHP_FILE_CODE = 9994
SHP_HEADER_SIZE = 100
SHP_RECORD_HEADER_SIZE = 8

# Sanity bounds for per-record counts (guards against corrupted records)
SHP_MAX_POINTS_PER_RECORD = 1_000_000
SHP_MAX_PARTS_PER_RECORD = 1_000_000

# Shape type codes
SHP_NULL = 0
SHP_POINT = 1
SHP_POLYLINE = 3
SHP_POLYGON = 5
SHP_MULTIPOINT = 8
SHP_POINTZ = 11
SHP_POLYLINEZ = 13
SHP_POLYGONZ = 15
SHP_MULTIPOINTZ = 18
SHP_POINTM = 21
SHP_POLYLINEM = 23
SHP_POLYGONM = 25
SHP_MULTIPOINTM = 28

SHP_TYPE_NAMES = {
    SHP_NULL: "Null",
    SHP_POINT: "Point",
    SHP_POLYLINE: "PolyLine",
    SHP_POLYGON: "Polygon",
    SHP_MULTIPOINT: "MultiPoint",
    SHP_POINTZ: "PointZ",
    SHP_POLYLINEZ: "PolyLineZ",
    SHP_POLYGONZ: "PolygonZ",
    SHP_MULTIPOINTZ: "MultiPointZ",
    SHP_POINTM: "PointM",
    SHP_POLYLINEM: "PolyLineM",
    SHP_POLYGONM: "PolygonM",
    SHP_MULTIPOINTM: "MultiPointM",
}

# Shape types carrying a Z array after the XY points
SHP_Z_TYPES = (SHP_POINTZ, SHP_POLYLINEZ, SHP_POLYGONZ, SHP_MULTIPOINTZ)

# ============================================================================
# DBF (dBase III) Layout
# ============================================================================

DBF_HEADER_SIZE = 32
DBF_FIELD_DESCRIPTOR_SIZE = 32
DBF_HEADER_TERMINATOR = 0x0D
DBF_DELETED_FLAG = 0x2A  # '*'
DBF_DEFAULT_ENCODING = "latin-1"

# ============================================================================
# DXF
# ============================================================================

DXF_DEFAULT_LAYER = "0"

# Segment counts for curve approximation
CIRCLE_SEGMENTS = 64
ARC_SEGMENTS = 32
ELLIPSE_SEGMENTS = 64

# Maximum INSERT nesting depth before expansion is abandoned
MAX_BLOCK_DEPTH = 16

DXF_SUPPORTED_ENTITIES = (
    "POINT",
    "LINE",
    "LWPOLYLINE",
    "POLYLINE",
    "CIRCLE",
    "ARC",
    "ELLIPSE",
    "INSERT",
)

# LAYER table flag bits (group code 70)
DXF_LAYER_FROZEN = 1
DXF_LAYER_LOCKED = 4

# LWPOLYLINE / POLYLINE flag bits (group code 70)
DXF_POLYLINE_CLOSED = 1

# ============================================================================
# Delimited Text
# ============================================================================

CSV_DELIMITER_CANDIDATES = [",", ";", "\t", "|"]
CSV_SAMPLE_LINES = 10

# Header aliases, matched as case-insensitive substrings in order
CSV_X_ALIASES = ["longitude", "lon", "lng", "easting", "east", "rechtswert", "x"]
CSV_Y_ALIASES = ["latitude", "lat", "northing", "north", "hochwert", "y"]
CSV_Z_ALIASES = ["elevation", "altitude", "height", "hoehe", "z"]

# ============================================================================
# Parser Contract
# ============================================================================

# Number of records read by analyze() for the preview sample
ANALYZE_RECORD_LIMIT = 100

# Maximum number of warnings kept verbatim (the total is always counted)
MAX_STORED_WARNINGS = 100

# ============================================================================
# Coordinate Systems
# ============================================================================

EPSG_WGS84 = "EPSG:4326"
EPSG_LV95 = "EPSG:2056"
EPSG_LV03 = "EPSG:21781"
EPSG_WEB_MERCATOR = "EPSG:3857"

PROJ4_WGS84 = "+proj=longlat +datum=WGS84 +no_defs"
PROJ4_LV95 = (
    "+proj=somerc +lat_0=46.95240555555556 +lon_0=7.439583333333333 +k_0=1 "
    "+x_0=2600000 +y_0=1200000 +ellps=bessel "
    "+towgs84=674.374,15.056,405.346,0,0,0,0 +units=m +no_defs"
)
PROJ4_LV03 = (
    "+proj=somerc +lat_0=46.95240555555556 +lon_0=7.439583333333333 +k_0=1 "
    "+x_0=600000 +y_0=200000 +ellps=bessel "
    "+towgs84=674.374,15.056,405.346,0,0,0,0 +units=m +no_defs"
)
PROJ4_WEB_MERCATOR = (
    "+proj=merc +a=6378137 +b=6378137 +lat_ts=0 +lon_0=0 +x_0=0 +y_0=0 +k=1 "
    "+units=m +nadgrids=@null +no_defs +over"
)

# Valid coordinate envelopes (minX, minY, maxX, maxY)
WGS84_ENVELOPE = (-180.0, -90.0, 180.0, 90.0)
LV95_ENVELOPE = (2485000.0, 1075000.0, 2835000.0, 1295000.0)
LV03_ENVELOPE = (485000.0, 75000.0, 835000.0, 295000.0)
WEB_MERCATOR_ENVELOPE = (-20037508.34, -20037508.34, 20037508.34, 20037508.34)

# Reference points used by registry verification: (code, x, y) -> approx (lon, lat)
VERIFICATION_POINTS = [
    (EPSG_LV95, 2645021.0, 1249991.0),
    (EPSG_LV03, 645021.0, 249991.0),
]
VERIFICATION_EXPECTED_LONLAT = (8.0, 47.4)
VERIFICATION_TOLERANCE_DEG = 0.5

# ============================================================================
# CRS Detection
# ============================================================================

METADATA_CONFIDENCE = 0.9
RANGE_CONFIDENCE_THRESHOLD = 0.7
HEURISTIC_MATCH_RATIO = 0.5
DEFAULT_DETECTION_CONFIDENCE = 0.1

# Numeral pattern multipliers for systems with a characteristic coordinate form
PATTERN_MATCH_BOOST = 1.2
PATTERN_MISMATCH_PENALTY = 0.8

DETECTION_SAMPLE_SIZE = 100

# ============================================================================
# Transformation Cache
# ============================================================================

# Whole-cache lifetime measured from the last clear (seconds)
TRANSFORM_CACHE_LIFETIME = 5 * 60

# Points sampled per edge (corners included) when transforming a bounding box
BOUNDS_DENSIFY_POINTS = 21

# ============================================================================
# Streaming / Chunk Manager
# ============================================================================

DEFAULT_CHUNK_SIZE = 1000
DEFAULT_MAX_MEMORY_MB = 512
DEFAULT_CHUNK_TTL = 5 * 60

# Estimated in-memory footprint of one feature when no heap reading is available
PER_FEATURE_COST_BYTES = 1024

# Inputs larger than this engage streaming mode (chunk TTL eviction)
DEFAULT_STREAMING_THRESHOLD_BYTES = 50 * 1024 * 1024

MEMORY_WARNING_RATIO = 0.7

# ============================================================================
# Preview / Sampling
# ============================================================================

DEFAULT_MAX_PREVIEW_FEATURES = 5000
DEFAULT_PREVIEW_CACHE_TTL = 24 * 60 * 60
DEFAULT_PREVIEW_CACHE_SIZE = 100

# Fraction of the cache removed when it is full (oldest first)
PREVIEW_CACHE_PRUNE_RATIO = 0.25

# Display padding added around preview bounds
BOUNDS_PADDING_RATIO = 0.1
