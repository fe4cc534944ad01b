# The name of the project
PROJECT_NAME = "Stackfold"

# The environment variable for the directory where the stackfold data is saved
HOME_ENV_VAR = "STACKFOLD_HOME"

# The default stack file looked up in the working directory
DEFAULT_STACK_FILE = "./stack.yaml"

# The file name of the persisted state inside a stack data directory
STATE_FILE_NAME = "state.json"

# The version of the persisted state document
STATE_FORMAT_VERSION = 1

# Error codes returned by AWS APIs when a request is throttled
AWS_THROTTLING_ERROR_CODES = frozenset(
    [
        "Throttling",
        "ThrottlingException",
        "ThrottledException",
        "RequestLimitExceeded",
        "TooManyRequestsException",
        "RequestThrottled",
        "RequestThrottledException",
        "SlowDown",
        "PriorRequestNotComplete",
    ]
)
