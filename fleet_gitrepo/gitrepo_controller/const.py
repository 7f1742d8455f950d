"""Constants for GitRepo conditions and display states."""

# Condition types, in the order they appear in the status
ACCEPTED = "Accepted"
GIT_POLLING = "GitPolling"
GIT_CHANGE_DETECTED = "GitChangeDetected"
STALLED = "Stalled"
READY = "Ready"

CONDITION_ORDER = [ACCEPTED, GIT_POLLING, GIT_CHANGE_DETECTED, STALLED, READY]

# Display states
STATE_GIT_UPDATING = "GitUpdating"
STATE_ERROR_AT_DOWNSTREAM = "ErrorAtDownstream"
STATE_WAIT_FOR_DEPLOYMENT = "WaitForDeployment"
STATE_READY = "Ready"
STATE_GIT_ERROR = "GitError"

# Condition reasons
REASON_ACCEPTED = "Accepted"
REASON_INVALID_SPEC = "InvalidSpec"
REASON_POLLED = "Polled"
REASON_WEBHOOK = "Webhook"
REASON_REVISION = "Revision"
REASON_RESOLVE_FAILED = "RemoteResolutionError"
REASON_JOB_FAILED = "JobFailed"
