import io
import os
import sys
import logging
import sqlite3
from datetime import datetime, timezone

from flask import Blueprint, Flask, current_app, jsonify, request, send_file
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
from werkzeug.utils import secure_filename

from database import close_pool, get_db, init_db
from errors import AppError, UnavailableError, ValidationError
from excel_handler import ExcelHandler, allowed_file
from models import CREATED
from schema_registry import SchemaRegistry
from student_store import StudentStore
from work_status import WorkStatusTracker

# Set up logging
def log_level():
    """LOG_LEVEL wins, otherwise DEBUG when FLASK_DEBUG is set"""
    if os.environ.get('LOG_LEVEL'):
        return os.environ['LOG_LEVEL'].upper()
    return 'DEBUG' if os.environ.get('FLASK_DEBUG') else 'INFO'


logging.basicConfig(level=log_level())

XLSX_MIMETYPE = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'

api = Blueprint('api', __name__)


def load_config(app):
    """Read settings from the environment into app.config"""
    app.config.from_mapping(
        SECRET_KEY=os.environ.get('SESSION_SECRET', 'dev-secret-key-change-in-production'),
        DATABASE=os.environ.get('DATABASE_PATH', os.path.join(app.instance_path, 'students.db')),
        DB_POOL_SIZE=int(os.environ.get('DB_POOL_SIZE', 5)),
        DB_POOL_TIMEOUT=float(os.environ.get('DB_POOL_TIMEOUT', 5.0)),
        DB_CONNECT_RETRIES=int(os.environ.get('DB_CONNECT_RETRIES', 5)),
        DB_CONNECT_BACKOFF=float(os.environ.get('DB_CONNECT_BACKOFF', 2.0)),
        IMPORT_HEADER_SCAN=os.environ.get('IMPORT_HEADER_SCAN', 'all_rows'),
        MAX_CONTENT_LENGTH=10 * 1024 * 1024,  # 10MB max upload
    )


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    os.makedirs(app.instance_path, exist_ok=True)

    load_config(app)
    if test_config is not None:
        app.config.update(test_config)

    # Keep student columns in table order
    app.json.sort_keys = False

    CORS(app)
    init_db(app)
    register_error_handlers(app)
    app.register_blueprint(api)
    return app


def register_error_handlers(app):
    @app.errorhandler(AppError)
    def handle_app_error(e):
        response = jsonify({'error': e.message})
        response.status_code = e.status_code
        if isinstance(e, UnavailableError):
            response.headers['Retry-After'] = '1'
        return response

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        return jsonify({'error': e.description}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        logging.error(f"Error handling {request.method} {request.path}: {str(e)}", exc_info=True)
        return jsonify({'error': str(e)}), 500


def json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


# Columns

@api.route('/api/columns', methods=['GET'])
def list_columns():
    return jsonify({'columns': SchemaRegistry(get_db()).list_columns()})


@api.route('/api/columns', methods=['POST'])
def add_column():
    data = json_body()
    definition = SchemaRegistry(get_db()).add_column(data.get('columnName'))
    return jsonify({'message': 'Column added successfully', 'columnName': definition.name})


@api.route('/api/columns/<path:column_name>', methods=['DELETE'])
def delete_column(column_name):
    SchemaRegistry(get_db()).remove_column(column_name)
    return jsonify({'message': 'Column deleted successfully'})


# Students

@api.route('/api/upload', methods=['POST'])
def upload_students():
    if 'file' not in request.files:
        raise ValidationError('No file uploaded')

    file = request.files['file']
    if not file.filename:
        raise ValidationError('No file uploaded')
    if not allowed_file(file.filename):
        raise ValidationError('Invalid file type. Please upload an Excel (.xlsx) or CSV file')

    content = file.read()
    if not content:
        raise ValidationError('Uploaded file is empty')

    filename = secure_filename(file.filename)
    logging.info(f"Importing {filename} ({len(content)} bytes)")

    conn = get_db()
    registry = SchemaRegistry(conn)
    handler = ExcelHandler(registry, StudentStore(conn, registry),
                           header_scan=current_app.config['IMPORT_HEADER_SCAN'])
    result = handler.import_file(content, file.filename)

    return jsonify({
        'message': 'File uploaded successfully',
        'recordsProcessed': result.processed,
        'recordsFailed': result.failed,
        'newColumnsAdded': result.new_columns_added
    })


@api.route('/api/students', methods=['GET'])
def list_students():
    records = StudentStore(get_db()).find(request.args.to_dict())
    return jsonify({'data': [r.to_dict() for r in records], 'count': len(records)})


@api.route('/api/students', methods=['POST'])
def save_student():
    result = StudentStore(get_db()).upsert_by_student_id(json_body())
    status_code = 201 if result.action == CREATED else 200
    return jsonify({
        'message': f'Student {result.action}',
        'studentId': result.student_id,
        'result': result.action
    }), status_code


@api.route('/api/students/export', methods=['GET'])
def export_students():
    conn = get_db()
    registry = SchemaRegistry(conn)
    store = StudentStore(conn, registry)
    records = store.find(request.args.to_dict())

    data = ExcelHandler(registry, store).export_students(records, registry.list_columns())
    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    return send_file(io.BytesIO(data), mimetype=XLSX_MIMETYPE, as_attachment=True,
                     download_name=f"students_export_{timestamp}.xlsx")


@api.route('/api/students/<student_id>', methods=['GET'])
def get_student(student_id):
    return jsonify(StudentStore(get_db()).get(student_id).to_dict())


# Work status

@api.route('/api/work-status', methods=['GET'])
def list_work_status():
    items = WorkStatusTracker(get_db()).list()
    return jsonify({'workStatus': [i.to_dict() for i in items]})


@api.route('/api/work-status', methods=['POST'])
def add_work_status():
    data = json_body()
    item = WorkStatusTracker(get_db()).create(
        data.get('task'),
        status=data.get('status'),
        start_date=data.get('startDate'),
        deadline=data.get('deadline')
    )
    return jsonify({'message': 'Work status added', 'id': item.id})


@api.route('/api/work-status/<int:item_id>', methods=['PUT'])
def update_work_status(item_id):
    data = json_body()
    WorkStatusTracker(get_db()).update(item_id, data.get('status'), data.get('completedDate'))
    return jsonify({'message': 'Work status updated'})


@api.route('/health', methods=['GET'])
def health():
    return jsonify({'status': 'healthy', 'timestamp': datetime.now(timezone.utc).isoformat()})


def main():
    try:
        app = create_app()
    except sqlite3.Error as e:
        logging.error(f"Database connection failed: {str(e)}")
        sys.exit(1)

    try:
        app.run(host='0.0.0.0', port=int(os.environ.get('PORT', 3000)),
                debug=bool(os.environ.get('FLASK_DEBUG')))
    finally:
        close_pool(app)


if __name__ == '__main__':
    main()
