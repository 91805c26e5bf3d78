"""
Durable per-profile state kept on the local file system.

Layout under the store root::

    <profile>/config.json       wheel configuration + viewer token
    <profile>/leaderboard.json  {label: wins}
    <profile>/logs.txt          live, append-only log
    <profile>/archives/         logs-<timestamp>.txt snapshots
    <profile>/uploads/          normalized logo images
"""
import json
import logging
import math
import os
import re
import secrets
import shutil
import threading
import time
import uuid
from datetime import datetime, timezone

from werkzeug.utils import secure_filename

from .errors import NotFoundError, StorageError, UploadError, ValidationError
from .imaging import image_type, normalize_image

logger = logging.getLogger(__name__)

DEFAULT_PROFILE = 'default'
MAX_PROFILE_NAME = 40
DEFAULT_UPLOAD_MAX_BYTES = 2 * 1024 * 1024
UPLOADS_URL_PREFIX = '/public/uploads'

_DISALLOWED_PROFILE_CHARS = re.compile(r'[^a-zA-Z0-9_-]')
# logs-<stamp>Z.txt, or logs-<stamp>Z-<n>.txt when that name is already taken
_ARCHIVE_NAME = re.compile(r'^(.*Z)(?:-(\d+))?\.txt$')

DEFAULT_SEGMENTS = [
    {'label': '1x Prize', 'color': ''},
    {'label': '2x Prize', 'color': ''},
    {'label': 'Nugget', 'color': ''},
]


def sanitize_profile(name):
    """Strip disallowed characters, cap at 40 chars, fall back to 'default'"""
    if not name or not isinstance(name, str):
        return DEFAULT_PROFILE
    return _DISALLOWED_PROFILE_CHARS.sub('', name)[:MAX_PROFILE_NAME] or DEFAULT_PROFILE


def utc_stamp():
    """ISO-8601 UTC timestamp with millisecond precision, e.g. 2024-05-01T10:00:00.000Z"""
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def generate_token():
    return secrets.token_urlsafe(9)


def _archive_sort_key(archive_id):
    """Order by stamp, then collision counter (a suffixed name is the newer one)"""
    match = _ARCHIVE_NAME.match(archive_id)
    if not match:
        return (archive_id, -1)
    return (match.group(1), int(match.group(2) or 0))


def default_config():
    return {
        'token': generate_token(),
        'segments': [dict(s) for s in DEFAULT_SEGMENTS],
        'logo': '',
        'logoHistory': [],
        'soundEnabled': True,
        'flashColor': '#ffff00',
        'flashOpacity': 0.6,
        'flashDuration': 600,
        'showLegend': False,
    }


# ==============================================================================
# CONFIG FIELD VALIDATORS
# ==============================================================================

_IGNORE = object()


def _string(value):
    return value if isinstance(value, str) else _IGNORE


def _boolean(value):
    return value if isinstance(value, bool) else _IGNORE


def _number(value):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return _IGNORE
    try:
        finite = math.isfinite(value)
    except OverflowError:
        # ints beyond float range
        return _IGNORE
    return value if finite else _IGNORE


def _segments(value):
    if not isinstance(value, list):
        return _IGNORE
    cleaned = []
    for segment in value:
        if not isinstance(segment, dict) or not isinstance(segment.get('label'), str):
            return _IGNORE
        color = segment.get('color')
        cleaned.append({'label': segment['label'], 'color': color if isinstance(color, str) else ''})
    return cleaned


# Only these keys may be written through save_config. token and logoHistory
# have their own operations.
CONFIG_FIELDS = {
    'segments': _segments,
    'logo': _string,
    'soundEnabled': _boolean,
    'flashColor': _string,
    'flashOpacity': _number,
    'flashDuration': _number,
    'showLegend': _boolean,
}


def merge_config(config, partial):
    """Apply the recognized, well-typed fields of ``partial`` onto ``config``.

    Returns the list of keys that were applied. Anything else in the
    partial is dropped without complaint.
    """
    if not isinstance(partial, dict):
        raise ValidationError('Config update must be a JSON object')

    applied = []
    for key, validate in CONFIG_FIELDS.items():
        if key not in partial:
            continue
        value = validate(partial[key])
        if value is _IGNORE:
            logger.debug(f"Ignoring mistyped config field {key!r}")
            continue
        config[key] = value
        applied.append(key)
    return applied


class ProfileStore:
    """
    File-backed store for every profile.

    All reads and writes go through one re-entrant lock, so a single
    read-modify-write of a profile file never interleaves with another.
    Nothing spans more than one operation: concurrent callers get
    last-write-wins.
    """

    def __init__(self, root, upload_max_bytes=DEFAULT_UPLOAD_MAX_BYTES):
        self.root = os.path.abspath(root)
        self.upload_max_bytes = upload_max_bytes
        self._lock = threading.RLock()
        try:
            os.makedirs(self.root, exist_ok=True)
        except OSError as e:
            raise StorageError(f'Cannot create profile root {self.root}: {e}') from e

    # ------------------------------------------------------------------
    # paths
    # ------------------------------------------------------------------

    def _dir(self, profile):
        return os.path.join(self.root, profile)

    def _config_path(self, profile):
        return os.path.join(self._dir(profile), 'config.json')

    def _leaderboard_path(self, profile):
        return os.path.join(self._dir(profile), 'leaderboard.json')

    def _log_path(self, profile):
        return os.path.join(self._dir(profile), 'logs.txt')

    def _archive_dir(self, profile):
        return os.path.join(self._dir(profile), 'archives')

    def uploads_dir(self, profile):
        return os.path.join(self._dir(sanitize_profile(profile)), 'uploads')

    @staticmethod
    def upload_url(profile, filename):
        return f"{UPLOADS_URL_PREFIX}/{sanitize_profile(profile)}/{filename}"

    # ------------------------------------------------------------------
    # low level file helpers
    # ------------------------------------------------------------------

    def _backup(self, path):
        """Copy a file aside as <path>.<timestamp>.bak"""
        backup_path = f"{path}.{datetime.now().strftime('%Y%m%d_%H%M%S')}.bak"
        try:
            shutil.copy2(path, backup_path)
            logger.info(f"💾 Backup created: {backup_path}")
            return backup_path
        except OSError as e:
            logger.error(f"💥 Backup creation failed for {path}: {e}")
            return None

    def _read_json(self, path, default_factory):
        with self._lock:
            if not os.path.exists(path):
                data = default_factory()
                self._write_json(path, data)
                return data
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
            except json.JSONDecodeError:
                data = None
            except OSError as e:
                raise StorageError(f'Cannot read {path}: {e}') from e

            if not isinstance(data, dict):
                logger.error(f"🚨 CORRUPTION: '{path}' unreadable. Auto-recovering...")
                self._backup(path)
                data = default_factory()
                self._write_json(path, data)
                logger.info(f"✅ Recovery complete. '{path}' reset to defaults.")
            return data

    def _write_json(self, path, data):
        """Atomic write: serialize first, write a temp file, then replace"""
        payload = json.dumps(data, indent=2, ensure_ascii=False)
        temp_path = f"{path}.tmp"
        with self._lock:
            try:
                with open(temp_path, 'w', encoding='utf-8') as f:
                    f.write(payload)
                os.replace(temp_path, path)
            except OSError as e:
                if os.path.exists(temp_path):
                    try:
                        os.remove(temp_path)
                    except OSError:
                        logger.warning(f"Could not remove temp file {temp_path}")
                raise StorageError(f'Cannot write {path}: {e}') from e
        logger.debug(f"💾 File saved: {path}")

    # ------------------------------------------------------------------
    # profiles
    # ------------------------------------------------------------------

    def ensure(self, name):
        """Create the profile's files if missing and return its sanitized name.

        Safe to call before every operation: existing files, and in
        particular the viewer token, are never touched.
        """
        profile = sanitize_profile(name)
        with self._lock:
            try:
                os.makedirs(self.uploads_dir(profile), exist_ok=True)
                os.makedirs(self._archive_dir(profile), exist_ok=True)
                if not os.path.exists(self._log_path(profile)):
                    open(self._log_path(profile), 'a', encoding='utf-8').close()
            except OSError as e:
                raise StorageError(f'Cannot create profile {profile}: {e}') from e

            if not os.path.exists(self._config_path(profile)):
                self._write_json(self._config_path(profile), default_config())
                logger.info(f"🆕 Profile created: {profile}")
            if not os.path.exists(self._leaderboard_path(profile)):
                self._write_json(self._leaderboard_path(profile), {})
        return profile

    def exists(self, name):
        return os.path.isfile(self._config_path(sanitize_profile(name)))

    def list_profiles(self):
        try:
            return sorted(
                entry for entry in os.listdir(self.root)
                if os.path.isdir(os.path.join(self.root, entry))
            )
        except OSError as e:
            raise StorageError(f'Cannot list profiles: {e}') from e

    # ------------------------------------------------------------------
    # config
    # ------------------------------------------------------------------

    def get_config(self, name):
        profile = self.ensure(name)
        return self._read_json(self._config_path(profile), default_config)

    def save_config(self, name, partial):
        """Merge the whitelisted fields of ``partial`` and return the stored config"""
        profile = self.ensure(name)
        with self._lock:
            config = self._read_json(self._config_path(profile), default_config)
            applied = merge_config(config, partial)
            self._write_json(self._config_path(profile), config)
        logger.info(f"⚙️ Config saved for '{profile}': {', '.join(applied) or 'no changes'}")
        return config

    def regenerate_token(self, name):
        profile = self.ensure(name)
        with self._lock:
            config = self._read_json(self._config_path(profile), default_config)
            old_token = config.get('token')
            token = generate_token()
            while token == old_token:
                token = generate_token()
            config['token'] = token
            self._write_json(self._config_path(profile), config)
        logger.info(f"🔑 Viewer token regenerated for '{profile}'")
        return token

    def get_token(self, name):
        """Viewer token of an existing profile, or None. Never creates the profile."""
        profile = sanitize_profile(name)
        if not self.exists(profile):
            return None
        return self._read_json(self._config_path(profile), default_config).get('token')

    # ------------------------------------------------------------------
    # leaderboard
    # ------------------------------------------------------------------

    def get_leaderboard(self, name):
        profile = self.ensure(name)
        return self._read_json(self._leaderboard_path(profile), dict)

    def increment_leaderboard(self, name, label):
        profile = self.ensure(name)
        with self._lock:
            stats = self._read_json(self._leaderboard_path(profile), dict)
            count = stats.get(label, 0)
            stats[label] = (count if isinstance(count, int) else 0) + 1
            self._write_json(self._leaderboard_path(profile), stats)
        return stats

    def reset_leaderboard(self, name):
        profile = self.ensure(name)
        self._write_json(self._leaderboard_path(profile), {})
        logger.info(f"🗑️ Leaderboard reset for '{profile}'")
        return {}

    # ------------------------------------------------------------------
    # logs and archives
    # ------------------------------------------------------------------

    def append_log(self, name, text):
        profile = self.ensure(name)
        line = f"[{utc_stamp()}] {' '.join(str(text).splitlines())}\n"
        with self._lock:
            try:
                with open(self._log_path(profile), 'a', encoding='utf-8') as f:
                    f.write(line)
            except OSError as e:
                raise StorageError(f'Cannot append to log of {profile}: {e}') from e

    def read_log_text(self, name):
        profile = self.ensure(name)
        try:
            with open(self._log_path(profile), 'r', encoding='utf-8') as f:
                return f.read()
        except OSError as e:
            raise StorageError(f'Cannot read log of {profile}: {e}') from e

    def read_log(self, name):
        return [line for line in self.read_log_text(name).split('\n') if line]

    def clear_log(self, name, actor):
        """Move the live log into a new archive and start over.

        The fresh log holds exactly one line: the record of this clear.
        Returns the archive id.
        """
        profile = self.ensure(name)
        with self._lock:
            stamp = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H-%M-%S-%fZ')
            archive_id = f"logs-{stamp}.txt"
            suffix = 1
            while os.path.exists(os.path.join(self._archive_dir(profile), archive_id)):
                archive_id = f"logs-{stamp}-{suffix}.txt"
                suffix += 1

            archive_path = os.path.join(self._archive_dir(profile), archive_id)
            try:
                os.replace(self._log_path(profile), archive_path)
                open(self._log_path(profile), 'w', encoding='utf-8').close()
            except OSError as e:
                raise StorageError(f'Cannot archive log of {profile}: {e}') from e
            self.append_log(profile, f"{actor} cleared logs (archived)")

        logger.info(f"📦 Log of '{profile}' archived as {archive_id}")
        return archive_id

    def list_archives(self, name):
        profile = self.ensure(name)
        try:
            names = [f for f in os.listdir(self._archive_dir(profile)) if f.endswith('.txt')]
        except OSError as e:
            raise StorageError(f'Cannot list archives of {profile}: {e}') from e
        return sorted(names, key=_archive_sort_key, reverse=True)

    def archive_path(self, name, archive_id):
        profile = self.ensure(name)
        if not archive_id or secure_filename(archive_id) != archive_id or not archive_id.endswith('.txt'):
            raise NotFoundError(f'Archive {archive_id!r} not found')
        path = os.path.join(self._archive_dir(profile), archive_id)
        if not os.path.isfile(path):
            raise NotFoundError(f'Archive {archive_id!r} not found')
        return path

    def read_archive(self, name, archive_id):
        path = self.archive_path(name, archive_id)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return f.read()
        except OSError as e:
            raise StorageError(f'Cannot read archive {archive_id}: {e}') from e

    # ------------------------------------------------------------------
    # uploads
    # ------------------------------------------------------------------

    def store_uploaded_image(self, name, raw, mimetype):
        """Normalize, persist and register an uploaded logo. Returns its filename.

        Each stage short-circuits: a rejected or undecodable image never
        reaches the disk, and a failed config write removes the image again.
        """
        profile = self.ensure(name)
        if not raw:
            raise UploadError('No image data received')
        if len(raw) > self.upload_max_bytes:
            raise UploadError(
                f'Image exceeds {self.upload_max_bytes} byte limit', status_code=413
            )

        fmt, ext = image_type(mimetype)
        data = normalize_image(raw, fmt)

        filename = f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}.{ext}"
        path = os.path.join(self.uploads_dir(profile), filename)
        with self._lock:
            try:
                with open(path, 'wb') as f:
                    f.write(data)
            except OSError as e:
                raise StorageError(f'Cannot store upload {filename}: {e}') from e

            try:
                config = self._read_json(self._config_path(profile), default_config)
                config['logoHistory'] = [filename] + list(config.get('logoHistory') or [])
                config['logo'] = self.upload_url(profile, filename)
                self._write_json(self._config_path(profile), config)
            except StorageError:
                os.remove(path)
                raise

        logger.info(f"🖼️ Logo uploaded for '{profile}': {filename} ({len(data)} bytes)")
        return filename

    def delete_upload(self, name, filename):
        """Remove an upload and its history entry. Returns False if it was not there."""
        profile = self.ensure(name)
        if not filename or secure_filename(filename) != filename:
            return False

        path = os.path.join(self.uploads_dir(profile), filename)
        with self._lock:
            config = self._read_json(self._config_path(profile), default_config)
            history = list(config.get('logoHistory') or [])
            present = os.path.isfile(path) or filename in history
            if not present:
                return False
            try:
                if os.path.isfile(path):
                    os.remove(path)
            except OSError as e:
                raise StorageError(f'Cannot delete upload {filename}: {e}') from e

            config['logoHistory'] = [f for f in history if f != filename]
            if config.get('logo') == self.upload_url(profile, filename):
                config['logo'] = ''
            self._write_json(self._config_path(profile), config)

        logger.info(f"🗑️ Upload deleted for '{profile}': {filename}")
        return True
