"""Exception types for the CAPI delivery pipeline.

Destination rejections and transport failures are not exceptions: the
delivery client reports them as `DeliveryResult` outcomes. The classes here
cover the failures that stop an event (or a whole tenant) before anything is
sent.
"""


class CapiError(Exception):
    """Base exception for CAPI pipeline errors."""

    kind = "capi_error"


class NoCredentialsError(CapiError):
    """Tenant has no usable access token through any resolution path."""

    kind = "no_credentials"


class CapiNotEnabledError(CapiError):
    """Tenant has no CAPI configuration, or it is switched off."""

    kind = "not_enabled"


class CapiValidationError(CapiError):
    """Payload precondition failed; the event must not be sent."""

    kind = "validation_error"


class DecryptionError(CapiError):
    """Stored credential blob could not be decrypted or parsed."""

    kind = "decryption_error"
