"""
Backup routes - operator control surface for backups.
"""

import logging

from flask import Blueprint, jsonify, request, current_app
from werkzeug.exceptions import HTTPException

from finvault.auth import admin_required
from finvault.backup.errors import (
    BackupError, BackupInProgress, BackupNotFound, BackupNotRestorable, IntegrityMismatch,
    StorageUnavailable
)
from finvault.models import BACKUP_TYPES, TRIGGER_MANUAL
from finvault.services import get_services


logger = logging.getLogger(__name__)

bp = Blueprint('backups', __name__, url_prefix='/api/backups')


# Most specific first
ERROR_STATUS_CODES = [
    (BackupNotFound, 404),
    (BackupNotRestorable, 409),
    (BackupInProgress, 409),
    (IntegrityMismatch, 422),
    (StorageUnavailable, 502),
]


def status_code_for(error: Exception) -> int:
    for error_class, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_class):
            return status_code
    return 500


@bp.errorhandler(BackupError)
def handle_backup_error(error):
    status_code = status_code_for(error)
    if status_code >= 500:
        logger.error(f"Backup operation failed: {error}")
    return jsonify({'error': str(error)}), status_code


@bp.errorhandler(ValueError)
def handle_value_error(error):
    return jsonify({'error': str(error)}), 400


@bp.errorhandler(Exception)
def handle_unexpected_error(error):
    if isinstance(error, HTTPException):
        return error
    logger.exception(f"Unexpected error in backup API: {error}")
    return jsonify({'error': str(error) or error.__class__.__name__}), 500


@bp.route('/create', methods=['POST'])
@admin_required
def create_backup():
    """
    Run a manual backup now.

    Request body:
        - type: full or incremental (default: full)

    Returns:
        201 with the completed record summary
    """
    data = request.get_json(silent=True) or {}
    backup_type = data.get('type', 'full')

    if backup_type not in BACKUP_TYPES:
        return jsonify({'error': f'Invalid backup type: {backup_type}'}), 400

    engine = get_services().engine
    if backup_type == 'full':
        record = engine.create_full_backup(triggered_by=TRIGGER_MANUAL)
    else:
        record = engine.create_incremental_backup(triggered_by=TRIGGER_MANUAL)

    return jsonify({
        'message': f'{backup_type.capitalize()} backup completed',
        'backup': record.to_summary()
    }), 201


@bp.route('/', methods=['GET'])
@admin_required
def list_backups():
    """
    List backups with filtering and pagination.

    Query params:
        - status: in_progress/completed/failed
        - type: full/incremental
        - page: Page number (default: 1)
        - limit: Records per page (default: 20, max: 200)
    """
    page = request.args.get('page', 1, type=int)
    limit = request.args.get('limit', 20, type=int)

    records, total = get_services().engine.catalog.list(
        status=request.args.get('status'),
        backup_type=request.args.get('type'),
        page=page,
        per_page=limit
    )

    page = max(page, 1)
    limit = min(max(limit, 1), 200)

    return jsonify({
        'backups': [record.to_summary() for record in records],
        'pagination': {
            'page': page,
            'limit': limit,
            'total': total,
            'pages': (total + limit - 1) // limit
        }
    })


@bp.route('/stats', methods=['GET'])
@admin_required
def backup_stats():
    return jsonify(get_services().engine.get_stats())


@bp.route('/scheduler/status', methods=['GET'])
@admin_required
def scheduler_status():
    services = get_services()
    return jsonify({
        'running': services.scheduler.running,
        'backupInProgress': services.engine.backup_in_progress,
        'jobs': services.scheduler.status()
    })


@bp.route('/cleanup', methods=['POST'])
@admin_required
def cleanup_backups():
    """Delete expired backups now."""
    summary = get_services().sweeper.enforce_retention()
    return jsonify({
        'message': f"Deleted {summary['deleted']} expired backups",
        **summary
    })


@bp.route('/test-config', methods=['POST'])
@admin_required
def test_config():
    """Check storage access and encryption key."""
    return jsonify(get_services().engine.test_configuration())


@bp.route('/<backup_id>', methods=['GET'])
@admin_required
def get_backup(backup_id):
    record = get_services().engine.catalog.get_or_raise(backup_id)
    return jsonify(record.to_dict())


@bp.route('/<backup_id>/restore', methods=['POST'])
@admin_required
def restore_backup(backup_id):
    """
    Restore data from a backup.

    Request body:
        - collections: Optional list of collection names
        - clearExisting: Remove existing documents first (default: false)
        - dryRun: Only report what would be restored (default: false)
    """
    data = request.get_json(silent=True) or {}
    collections = data.get('collections')

    if collections is not None and not isinstance(collections, list):
        return jsonify({'error': 'collections must be a list'}), 400

    result = get_services().engine.restore_from_backup(
        backup_id,
        collections=collections,
        clear_existing=bool(data.get('clearExisting', False)),
        dry_run=bool(data.get('dryRun', False))
    )

    return jsonify(result)


@bp.route('/<backup_id>/verify', methods=['POST'])
@admin_required
def verify_backup(backup_id):
    return jsonify(get_services().engine.verify_backup(backup_id))


@bp.route('/<backup_id>', methods=['DELETE'])
@admin_required
def delete_backup(backup_id):
    result = get_services().engine.delete_backup(backup_id)
    return jsonify({'message': f'Backup {backup_id} deleted', **result})


@bp.route('/<backup_id>/download', methods=['GET'])
@admin_required
def download_backup(backup_id):
    """Signed, time-limited download URL for the archive."""
    expires_in = current_app.config.get('BACKUP_DOWNLOAD_URL_EXPIRES', 3600)
    return jsonify(get_services().engine.get_download_url(backup_id, expires_in))
