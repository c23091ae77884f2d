from .asset import Backend, PersistState, StoredAsset
from .compression import CompressionResult, EncodeAttempt, NormalizedImage
from .profile import CompressionProfile, FitMode
from .upload import AssetCategory, UploadRequest

__all__ = [
    "AssetCategory",
    "Backend",
    "CompressionProfile",
    "CompressionResult",
    "EncodeAttempt",
    "FitMode",
    "NormalizedImage",
    "PersistState",
    "StoredAsset",
    "UploadRequest",
]
