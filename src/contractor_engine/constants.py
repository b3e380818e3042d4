"""Application-wide constants and default policies."""

# Collections
CONTRACTORS_COLLECTION = "contractors"
EVALUATIONS_COLLECTION = "evaluations"
TASKS_COLLECTION = "tasks"
USERS_COLLECTION = "users"
GRADE_CHANGE_LOGS_COLLECTION = "grade-change-logs"
NOTIFICATION_LOGS_COLLECTION = "notification-logs"
ESCALATION_STATS_COLLECTION = "fee-escalation-stats"
ENGINE_CONFIG_COLLECTION = "engine-config"

# Metric clamp ranges (inclusive)
RATING_RANGE = (0.0, 5.0)
COMPLETED_JOBS_RANGE = (0, 1000)
RESPONSE_TIME_RANGE_MINUTES = (1.0, 480.0)
PERCENT_RANGE = (0.0, 100.0)

# Evaluation categories and their weights when no overall score is supplied
EVALUATION_CATEGORY_WEIGHTS = {
    "quality": 0.25,
    "punctuality": 0.20,
    "costSaving": 0.20,
    "communication": 0.15,
    "professionalism": 0.20,
}
QUALITY_CATEGORY = "quality"
IMPROVEMENT_THRESHOLD = 3.0  # Category average below this earns improvement guidance

# Threshold policy, highest tier first. maxResponseMinutes is an upper bound.
DEFAULT_THRESHOLD_TIERS = [
    {
        "tier": "diamond",
        "minJobs": 50,
        "minRating": 4.5,
        "minQuality": 4.5,
        "maxResponseMinutes": 30,
        "minOnTimeRate": 95,
        "minSatisfactionRate": 90,
    },
    {
        "tier": "platinum",
        "minJobs": 40,
        "minRating": 4.3,
        "minQuality": 4.3,
        "maxResponseMinutes": 45,
        "minOnTimeRate": 90,
        "minSatisfactionRate": 85,
    },
    {
        "tier": "gold",
        "minJobs": 25,
        "minRating": 4.0,
        "minQuality": 4.0,
        "maxResponseMinutes": 60,
        "minOnTimeRate": 80,
        "minSatisfactionRate": 80,
    },
    {
        "tier": "silver",
        "minJobs": 10,
        "minRating": 3.5,
        "minQuality": 3.0,
        "maxResponseMinutes": 90,
        "minOnTimeRate": 70,
        "minSatisfactionRate": 70,
    },
    {
        "tier": "bronze",
        "minJobs": 0,
        "minRating": 0,
        "minQuality": 0,
        "maxResponseMinutes": 480,
        "minOnTimeRate": 0,
        "minSatisfactionRate": 0,
    },
]

# Weighted-score policy
DEFAULT_SCORE_WEIGHTS = {
    "jobs": 0.25,
    "rating": 0.30,
    "quality": 0.20,
    "responseTime": 0.15,
    "onTime": 0.10,
}
DEFAULT_SCORE_BANDS = [
    {"tier": "A", "minScore": 90},  # 4.5 on the 0-5 scale
    {"tier": "B", "minScore": 70},  # 3.5
    {"tier": "C", "minScore": 50},  # 2.5
    {"tier": "D", "minScore": 0},
]
JOBS_SATURATION_POINT = 100  # Completed jobs that earn the full jobs sub-score
WEIGHT_SUM_TOLERANCE = 1e-6

DEFAULT_GRADE_POLICY = {
    "policy": "threshold",
    "tiers": DEFAULT_THRESHOLD_TIERS,
    "weights": DEFAULT_SCORE_WEIGHTS,
    "bands": DEFAULT_SCORE_BANDS,
}

# Fee escalation cadences
SHORT_CADENCE_INTERVAL_SECONDS = 600  # 10 minutes
LONG_CADENCE_INTERVAL_SECONDS = 3600  # 1 hour
DEFAULT_ESCALATION_STEP = 5  # Percentage points per increase
DEFAULT_BASE_SURCHARGE = 15
DEFAULT_MAX_SURCHARGE = 50
MAX_REPORTED_TICK_ERRORS = 10

DEFAULT_ESCALATION_POLICY = {
    "short": {
        "intervalSeconds": SHORT_CADENCE_INTERVAL_SECONDS,
        "stepSize": DEFAULT_ESCALATION_STEP,
        "enabled": True,
    },
    "long": {
        "intervalSeconds": LONG_CADENCE_INTERVAL_SECONDS,
        "stepSize": DEFAULT_ESCALATION_STEP,
        "enabled": True,
    },
    "notifyOnIncrease": True,
}

# Notification delivery
DEFAULT_NOTIFICATION_POLICY = {
    "maxAttempts": 3,
    "backoffMultiplierSeconds": 1,
    "backoffMaxSeconds": 10,
    "maxWorkers": 8,
}

# Batch recomputation
DEFAULT_BATCH_WORKERS = 8

# Roles
ADMIN_ROLE = "admin"
