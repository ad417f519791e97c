"""Exception hierarchy shared by the avatar build pipeline."""


class AvatarBuildError(RuntimeError):
    """Base class for errors raised while building an avatar asset."""


class GlbFormatError(AvatarBuildError, ValueError):
    """Raised when a binary glTF container is malformed."""


class GltfValidationError(AvatarBuildError, ValueError):
    """Raised when a scene document violates glTF structural rules."""


class ConfigError(AvatarBuildError, ValueError):
    """Raised when a JSON configuration file cannot be loaded or validated."""


class ExternalToolError(AvatarBuildError):
    """Raised when an external converter or optimizer cannot be executed."""


__all__ = [
    "AvatarBuildError",
    "ConfigError",
    "ExternalToolError",
    "GlbFormatError",
    "GltfValidationError",
]
