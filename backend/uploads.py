import os
from uuid import uuid4

from flask import jsonify, request
from werkzeug.utils import secure_filename

from errors import ApiError, BadRequest
from users import Role


def allowed_extension(filename: str, allowed) -> bool:
    extension = os.path.splitext(filename)[1].lower().lstrip(".")
    if not extension:
        return False
    return extension in allowed


def register_upload_routes(app, settings, gate) -> None:
    upload_directory = settings.upload_folder
    if not os.path.isabs(upload_directory):
        upload_directory = os.path.join(app.root_path, upload_directory)
    os.makedirs(upload_directory, exist_ok=True)

    def store_upload(upload, original_filename: str) -> str:
        extension = os.path.splitext(original_filename)[1].lower()
        unique_filename = f"{uuid4().hex}{extension}"
        destination = os.path.join(upload_directory, unique_filename)
        try:
            upload.save(destination)
        except OSError as exc:
            app.logger.error("Unable to store upload %s: %s", unique_filename, exc)
            raise ApiError("We could not store the uploaded file. Please try again.")
        return unique_filename

    @app.route("/upload", methods=["POST"])
    @gate.roles_required(Role.ADMIN)
    def upload_file():
        upload = request.files.get("file")
        if not upload or not upload.filename:
            raise BadRequest("No file was uploaded.")
        original_filename = secure_filename(upload.filename)
        if (
            upload.mimetype not in settings.allowed_upload_types
            or not allowed_extension(original_filename, settings.allowed_upload_extensions)
        ):
            raise BadRequest("Unsupported file type. Upload PNG, JPG, GIF or SVG images.")

        stored_name = store_upload(upload, original_filename)
        app.logger.info("Stored upload %s", stored_name)
        return (
            jsonify(
                {
                    "file_name": f"/{os.path.basename(upload_directory)}/{stored_name}",
                    "original_name": upload.filename,
                }
            ),
            201,
        )
