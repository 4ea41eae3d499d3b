from slowapi import Limiter
from slowapi.util import get_remote_address
from fastapi import UploadFile, HTTPException

from met_analysis import config

limiter = Limiter(key_func=get_remote_address)


def validate_file(file: UploadFile):
    """Validate uploaded file size and extension"""
    if not file.filename or not file.filename.lower().endswith('.csv'):
        raise HTTPException(status_code=400, detail="Only CSV files are allowed.")

    max_size = int(config.MAX_UPLOAD_MB * 1024 * 1024)
    size = 0
    # Read in chunks to check size without loading entirely into memory
    for chunk in file.file:
        size += len(chunk)
        if size > max_size:
            raise HTTPException(status_code=400, detail=f"File too large. Max {config.MAX_UPLOAD_MB:g}MB.")
    file.file.seek(0)
    return True
