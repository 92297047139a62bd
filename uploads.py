import logging
import os
import uuid

from flask import send_from_directory
from werkzeug.utils import secure_filename

import config
from errors import APIError

logger = logging.getLogger(__name__)

# Allowed image extensions and content types
ALLOWED_EXTENSIONS = {'jpg', 'jpeg', 'png', 'gif', 'webp'}
ALLOWED_MIMETYPES = {'image/jpeg', 'image/png', 'image/gif', 'image/webp'}

PUBLIC_PREFIX = '/uploads'
CACHE_HEADERS = {
    'Cache-Control': 'public, max-age=31536000, immutable',
    'X-Content-Type-Options': 'nosniff',
    'Content-Disposition': 'inline',
}


def allowed_file(file):
    filename = file.filename or ''
    return '.' in filename and \
           filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS and \
           file.mimetype in ALLOWED_MIMETYPES


def _file_size(file):
    stream = file.stream
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(0)
    return size


def public_path_for(stored_name):
    return f"{PUBLIC_PREFIX}/{os.path.basename(stored_name)}"


def validate_images(files):
    """Drop empty file inputs and check the rest before anything touches disk."""
    files = [f for f in files if f and f.filename]
    if len(files) > config.MAX_IMAGES_PER_REQUEST:
        raise APIError(f'Too many files. At most {config.MAX_IMAGES_PER_REQUEST} images are allowed.', 400)
    for file in files:
        if not allowed_file(file):
            raise APIError('Invalid file type. Only images are allowed.', 400)
        if _file_size(file) > config.MAX_IMAGE_SIZE:
            raise APIError('File too large. Images must be 5MB or smaller.', 413)
    return files


def save_file(file):
    """Write one upload under a random name and return its public path."""
    ext = secure_filename(file.filename).rsplit('.', 1)[-1].lower()
    unique_filename = f"{uuid.uuid4().hex}.{ext}"
    file.save(os.path.join(config.UPLOAD_FOLDER, unique_filename))
    logger.info("Stored upload %s (%s)", unique_filename, file.mimetype)
    return public_path_for(unique_filename)


def remove_file(public_path):
    """Best-effort removal of a stored upload, used when a request is rolled back."""
    full_path = os.path.join(config.UPLOAD_FOLDER, os.path.basename(public_path))
    try:
        if os.path.exists(full_path):
            os.remove(full_path)
    except OSError as e:
        logger.warning("Error deleting upload %s: %s", public_path, e)


def serve_upload(filename):
    response = send_from_directory(config.UPLOAD_FOLDER, os.path.basename(filename),
                                   max_age=31536000)
    response.headers.update(CACHE_HEADERS)
    return response
