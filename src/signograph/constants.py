"""Tunable constants for signograph.

Every threshold, cap and coefficient lives here so the metric, similarity
and store modules share a single source of defaults.
"""

# --- Node defaults ---
DEFAULT_NODE_TYPE = "concept"
DEFAULT_IMPORTANCE = 0.5
UNKNOWN_REGION = "Unknown"
DEFAULT_CERTAINTY = "confirmed"
DEFAULT_EDGE_LABEL = "related"

# --- PageRank ---
PAGERANK_DAMPING = 0.85
PAGERANK_PRECISION = 1e-6
PAGERANK_MAX_ITERATIONS = 200
PAGERANK_FALLBACK = 0.01  # Used when PageRank itself fails

# --- Community detection ---
LOUVAIN_RESOLUTION = 1.0
LOUVAIN_MAX_PASSES = 20
RAG_RESOLUTIONS = (0.8, 1.2)  # coarse, granular
RAG_TOP_COMMUNITIES = 5
RAG_MIN_COMMUNITY_SIZE = 3

# --- Triadic balance ---
TRIAD_NODE_CAP = 150
NEGATIVE_EDGE_KEYWORDS = (
    "conflict",
    "rival",
    "anti",
    "against",
    "enemy",
    "opponent",
    "fight",
    "konflikt",
    "rywal",
    "przeciw",
    "wro",  # wróg, wrogość
)

# --- Security / risk scoring ---
BROKER_BETWEENNESS_THRESHOLD = 0.1
BROKER_RISK_INCREMENT = 0.3
CROSS_REGION_EDGE_THRESHOLD = 3
CROSS_REGION_RISK_INCREMENT = 0.2
K_CORE_SCALE = 10

# --- Rounding of published metrics ---
METRIC_DECIMALS = 6
SECURITY_DECIMALS = 4
MODULARITY_DECIMALS = 3

# --- Duplicate detection ---
LEXICAL_DUPLICATE_THRESHOLD = 0.7
SEMANTIC_DUPLICATE_THRESHOLD = 0.88
SEMANTIC_TOP_N = 150
DEFAULT_EMBEDDING_MODEL = "all-MiniLM-L6-v2"

# --- History / persistence ---
HISTORY_CAPACITY = 50
AUTOSAVE_INTERVAL_SECONDS = 10.0
SNAPSHOT_SLOT = "current"
DEFAULT_GRAPH_VERSION = "1.0"

# --- Analysis ---
TOP_BRIDGES = 5
TEMPORAL_LOOKBACK_YEARS = 10
TEMPORAL_KEY_IMPORTANCE = 0.8
TEMPORAL_ENTITY_SAMPLE = 30
TEMPORAL_EDGE_SAMPLE = 50
