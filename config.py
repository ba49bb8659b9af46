"""
Service configuration
Environment-driven settings for the Flask coordinator.
"""
import os
from dataclasses import dataclass


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value not in (None, "") else default


@dataclass
class Settings:
    """Runtime settings (read from the environment by from_env)."""
    ocr_backend: str = "tesseract"     # 'tesseract' or 'fastmrz'
    tessdata_path: str = "models/"     # Directory containing mrz.traineddata
    tesseract_cmd: str = ""            # Empty uses tesseract from PATH
    issuing_country: str = "TUR"
    buffer_capacity: int = 10
    required_frames: int = 3
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 5000

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            ocr_backend=os.environ.get('OCR_BACKEND', cls.ocr_backend).lower(),
            tessdata_path=os.environ.get('TESSDATA_PATH', cls.tessdata_path),
            tesseract_cmd=os.environ.get('TESSERACT_CMD', cls.tesseract_cmd),
            issuing_country=os.environ.get('ISSUING_COUNTRY', cls.issuing_country).upper(),
            buffer_capacity=_env_int('FRAME_BUFFER_CAPACITY', cls.buffer_capacity),
            required_frames=_env_int('REQUIRED_FRAMES', cls.required_frames),
            log_level=os.environ.get('LOG_LEVEL', cls.log_level).upper(),
            host=os.environ.get('HOST', cls.host),
            port=_env_int('PORT', cls.port),
        )
