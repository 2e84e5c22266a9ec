DEFAULT_CACHE_TTL_SECONDS = 300

PERMISSION_KEY_PREFIX = "permission"
GEO_SCOPES_KEY_PREFIX = "geo_scopes"
POLICIES_KEY_PREFIX = "policies"

# Decision reasons
REASON_GRANTED = "access_granted"
REASON_OVERRIDE = "user_permission_override"
REASON_NO_SCOPE = "no scope assigned"
REASON_OUTSIDE_SCOPE = "outside user geographic scope"
REASON_OWNER_UNKNOWN = "cannot determine resource ownership"
REASON_NOT_OWNER = "only own submissions"
REASON_OWNERSHIP_FAILED = "ownership check failed"
REASON_ELECTION_NOT_ACTIVE = "can only submit results during active elections"
REASON_RESULT_NOT_VERIFIED = "public viewers can only view verified results"
REASON_EVALUATION_ERROR = "evaluation_error"

OWNERSHIP_ACTIONS = frozenset({"update", "delete", "verify", "approve"})
OWNER_ATTRIBUTES = ("ownerId", "createdBy", "submittedBy")
