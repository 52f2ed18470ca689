import os
from datetime import datetime
import cloudinary
import cloudinary.uploader
from fastapi import UploadFile
import logging
from portal.config import settings
from portal.exceptions import UploadError

# Configure Cloudinary
cloudinary.config(
    cloud_name=settings.CLOUDINARY_CLOUD_NAME,
    api_key=settings.CLOUDINARY_API_KEY,
    api_secret=settings.CLOUDINARY_API_SECRET,
    secure=True
)

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {
    ".jpg", ".jpeg", ".png", ".gif", ".webp",
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".txt",
}

async def upload_attachment(file: UploadFile, folder: str = "announcements") -> str:
    """
    Upload an announcement attachment to Cloudinary and return its URL.

    Args:
        file: The file to upload
        folder: The Cloudinary folder to upload to

    Returns:
        The secure URL of the uploaded file

    Raises:
        UploadError: If the service is not configured, the file type is not
            allowed, or the upload fails
    """
    if not settings.CLOUDINARY_CLOUD_NAME or not settings.CLOUDINARY_API_KEY or not settings.CLOUDINARY_API_SECRET:
        logger.error("Cloudinary credentials not configured")
        raise UploadError("File upload service is not configured")

    # Check file type
    file_ext = os.path.splitext(file.filename)[1].lower() if file.filename else ""

    if file_ext not in ALLOWED_EXTENSIONS:
        raise UploadError(
            f"File type not allowed. Must be one of: {', '.join(sorted(ALLOWED_EXTENSIONS))}"
        )

    # Read file content
    contents = await file.read()

    try:
        stem = os.path.splitext(file.filename)[0]
        result = cloudinary.uploader.upload(
            contents,
            folder=folder,
            resource_type="auto",
            public_id=f"{int(datetime.now().timestamp() * 1000)}_{stem}",
        )

        # Return the secure URL
        return result["secure_url"]

    except Exception as e:
        logger.error(f"Error uploading to Cloudinary: {str(e)}")
        raise UploadError(f"Failed to upload attachment: {str(e)}")
    finally:
        # Reset file pointer for potential further processing
        await file.seek(0)
