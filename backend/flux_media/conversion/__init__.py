from .models import ConversionResult, ConversionSettings, MediaFormat, MediaType, ProcessorInfo, SuccessPolicy
from .service import ImageConverter, VideoConverter, get_size_reduction

__all__ = [
    "ConversionResult",
    "ConversionSettings",
    "ImageConverter",
    "MediaFormat",
    "MediaType",
    "ProcessorInfo",
    "SuccessPolicy",
    "VideoConverter",
    "get_size_reduction",
]
