import os
from io import BytesIO
from datetime import date, datetime

from flask import current_app, request, send_file
from werkzeug.utils import secure_filename

from models import db, Settings
from errors import NotFound, ValidationError


def get_instance_path(*parts):
    """Directory below the Flask instance folder, created on demand"""
    base = os.path.join(current_app.instance_path, *parts)
    os.makedirs(base, exist_ok=True)
    return base


def get_owner_dir(config_key, owner_id):
    """Per-tenant directory below ARTIFACT_DIR or LETTERHEAD_DIR"""
    base = current_app.config.get(config_key) or get_instance_path(config_key.lower())
    path = os.path.join(base, f'owner{int(owner_id)}')
    os.makedirs(path, exist_ok=True)
    return path


def letterhead_file_path(owner_id, filename):
    """Resolve a stored letterhead file (backdrop PDF or font) of a tenant."""
    if not filename:
        return None
    safe = secure_filename(os.path.basename(filename))
    if not safe:
        return None
    return os.path.join(get_owner_dir('LETTERHEAD_DIR', owner_id), safe)


def get_settings(owner_id):
    """Settings row of a tenant; created with defaults when missing."""
    settings = Settings.query.filter_by(owner_id=owner_id).first()
    if settings is None:
        settings = Settings(owner_id=owner_id)
        db.session.add(settings)
        db.session.flush()
    return settings


def get_owned_or_404(model, object_id, owner_id):
    obj = model.query.filter_by(id=object_id, owner_id=owner_id).first()
    if obj is None:
        raise NotFound(f'{model.__name__} {object_id} nicht gefunden.')
    return obj


def request_data():
    """JSON body or form fields of the current request as a plain dict."""
    if request.is_json:
        return request.get_json(silent=True) or {}
    return request.form.to_dict()


def parse_date(value, field=None):
    """Parse YYYY-MM-DD or DD.MM.YYYY; empty input gives None."""
    if value is None or isinstance(value, date):
        return value
    value = str(value).strip()
    if not value:
        return None
    for fmt in ('%Y-%m-%d', '%d.%m.%Y'):
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    raise ValidationError(f'"{value}" ist kein gültiges Datum.', field=field)


def fmt_de_date(value):
    """dd.mm.yyyy, or None when unset"""
    if value is None:
        return None
    return value.strftime('%d.%m.%Y')


def send_file_response(data, filename, mimetype, *, as_attachment=True):
    """Send generated bytes with no-cache headers."""
    response = send_file(
        BytesIO(data),
        mimetype=mimetype,
        as_attachment=as_attachment,
        download_name=filename,
        max_age=0,
    )
    response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'
    response.headers['Pragma'] = 'no-cache'
    response.headers['Expires'] = '0'
    return response
