from .main import (
    CancelResult,
    CancelStatus,
    CancellationRequest,
    ConfigurationError,
    PayfastClient,
    PayfastError,
    PayfastSettings,
    RecurringPeriodError,
    SignedEnvelope,
    SubscriptionRef,
    ValidationError,
    build_param_string,
    generate_signature,
)
from .gateway import FormSubmission, GatewayCancellationHandler, RecurringPayfastGateway

__all__ = [
    "CancelResult",
    "CancelStatus",
    "CancellationRequest",
    "ConfigurationError",
    "FormSubmission",
    "GatewayCancellationHandler",
    "PayfastClient",
    "PayfastError",
    "PayfastSettings",
    "RecurringPayfastGateway",
    "RecurringPeriodError",
    "SignedEnvelope",
    "SubscriptionRef",
    "ValidationError",
    "build_param_string",
    "generate_signature",
]
