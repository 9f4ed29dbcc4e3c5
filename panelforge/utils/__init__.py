"""
Panelforge Utilities Module

Common utility functions and helpers used throughout the application.
"""

from .file_utils import atomic_write_text, ensure_directory, filename_to_key, key_to_filename
from .image_utils import decode_data_url, reencode_as_jpeg, split_data_url, to_data_url
from .json_utils import parse_model_json, strip_code_fences

__all__ = [
    'atomic_write_text',
    'ensure_directory',
    'filename_to_key',
    'key_to_filename',
    'decode_data_url',
    'reencode_as_jpeg',
    'split_data_url',
    'to_data_url',
    'parse_model_json',
    'strip_code_fences',
]
