class ConversionToolError(Exception):
    """Base class for every fatal error raised by arr_conversion."""


class ConfigurationError(ConversionToolError):
    """Missing or invalid settings. Raised before any network activity."""


class AuthenticationError(ConversionToolError):
    """The account key could not be exchanged for an access token."""


class UploadError(ConversionToolError):
    """The local asset directory could not be uploaded."""
