import io

import pandas as pd
import pytest

from app import log_level
from conftest import make_xlsx
from schema_registry import SchemaRegistry


def upload(client, payload, filename='students.xlsx'):
    return client.post('/api/upload', data={'file': (io.BytesIO(payload), filename)},
                       content_type='multipart/form-data')


class TestHealth:
    def test_health(self, client):
        response = client.get('/health')

        assert response.status_code == 200
        assert response.get_json()['status'] == 'healthy'
        assert 'timestamp' in response.get_json()

    def test_unknown_route_is_json(self, client):
        response = client.get('/api/nothing-here')
        assert response.status_code == 404
        assert 'error' in response.get_json()


class TestColumnsApi:
    def test_list_base_columns(self, client):
        response = client.get('/api/columns')
        assert response.get_json() == {'columns': ['student_id', 'name', 'class', 'section']}

    def test_add_and_delete_column(self, client):
        response = client.post('/api/columns', json={'columnName': 'house'})
        assert response.status_code == 200
        assert response.get_json() == {'message': 'Column added successfully', 'columnName': 'house'}
        assert client.get('/api/columns').get_json()['columns'][-1] == 'house'

        response = client.delete('/api/columns/house')
        assert response.status_code == 200
        assert response.get_json() == {'message': 'Column deleted successfully'}
        assert 'house' not in client.get('/api/columns').get_json()['columns']

    def test_duplicate_column(self, client):
        client.post('/api/columns', json={'columnName': 'house'})

        response = client.post('/api/columns', json={'columnName': 'house'})

        assert response.status_code == 400
        assert response.get_json() == {'error': 'Column already exists'}

    @pytest.mark.parametrize('body', [{}, {'columnName': ''}, ['house']])
    def test_add_column_needs_a_name(self, client, body):
        assert client.post('/api/columns', json=body).status_code == 400

    def test_delete_base_column(self, client):
        response = client.delete('/api/columns/name')

        assert response.status_code == 400
        assert response.get_json() == {'error': 'Cannot delete base columns'}

    def test_delete_unregistered_column(self, client):
        assert client.delete('/api/columns/house').status_code == 404


class TestUploadApi:
    def test_upload(self, client):
        payload = make_xlsx([
            {'student_id': 'S1', 'name': 'Alice', 'class': 'Class 10A', 'section': 'A', 'house': 'Nilgiri'},
            {'student_id': None, 'name': 'Ghost', 'class': 'Class 10A', 'section': 'A', 'house': 'Aravali'},
        ])

        response = upload(client, payload)

        assert response.status_code == 200
        assert response.get_json() == {
            'message': 'File uploaded successfully',
            'recordsProcessed': 1,
            'recordsFailed': 1,
            'newColumnsAdded': ['house'],
        }

    def test_upload_csv(self, client):
        response = upload(client, b"student_id,name\nS1,Alice\n", 'students.csv')
        assert response.get_json()['recordsProcessed'] == 1

    def test_missing_file(self, client):
        response = client.post('/api/upload', data={}, content_type='multipart/form-data')

        assert response.status_code == 400
        assert response.get_json() == {'error': 'No file uploaded'}

    def test_empty_file(self, client):
        assert upload(client, b'').status_code == 400

    def test_wrong_file_type(self, client):
        assert upload(client, b'%PDF-1.4', 'students.pdf').status_code == 400

    def test_legacy_xls_rejected(self, client):
        response = upload(client, b'\xd0\xcf\x11\xe0', 'students.xls')

        assert response.status_code == 400
        assert 'Invalid file type' in response.get_json()['error']

    def test_unparseable_file(self, client):
        assert upload(client, b'not really excel').status_code == 400

    def test_header_only_file(self, client):
        response = upload(client, make_xlsx([], columns=['student_id', 'name']))

        assert response.status_code == 400
        assert response.get_json() == {'error': 'Excel file is empty'}

    def test_upload_too_large(self, app, client):
        app.config['MAX_CONTENT_LENGTH'] = 1024

        response = upload(client, b'x' * 4096)

        assert response.status_code == 413
        assert 'error' in response.get_json()


class TestStudentsApi:
    @pytest.fixture
    def students(self, client):
        upload(client, make_xlsx([
            {'student_id': 'S1', 'name': 'Alice', 'class': 'Class 10A', 'section': 'A', 'house': 'Nilgiri'},
            {'student_id': 'S2', 'name': 'Bob', 'class': 'Class 10B', 'section': 'B', 'house': 'Aravali'},
            {'student_id': 'S3', 'name': 'Chitra', 'class': 'Class 9A', 'section': 'A', 'house': 'Nilgiri'},
        ]))

    def test_list_all(self, client, students):
        body = client.get('/api/students').get_json()

        assert body['count'] == 3
        assert list(body['data'][0]) == ['id', 'student_id', 'name', 'class', 'section', 'house', 'created_at']

    def test_filter(self, client, students):
        body = client.get('/api/students?class=10a').get_json()

        assert body['count'] == 1
        assert body['data'][0]['student_id'] == 'S1'

    def test_combined_filters_and_empty_values(self, client, students):
        body = client.get('/api/students?house=nil&section=a&name=').get_json()
        assert [s['student_id'] for s in body['data']] == ['S1', 'S3']

    def test_unknown_filter(self, client, students):
        response = client.get('/api/students?colour=red')

        assert response.status_code == 400
        assert 'colour' in response.get_json()['error']

    def test_get_student(self, client, students):
        assert client.get('/api/students/S2').get_json()['name'] == 'Bob'
        assert client.get('/api/students/S9').status_code == 404

    def test_save_student(self, client, students):
        response = client.post('/api/students', json={'student_id': 'S4', 'name': 'Dev', 'house': 'Udaigiri'})
        assert response.status_code == 201
        assert response.get_json() == {'message': 'Student created', 'studentId': 'S4', 'result': 'created'}

        response = client.post('/api/students', json={'student_id': 'S4', 'class': 'Class 8A', 'name': ''})
        assert response.status_code == 200
        assert response.get_json()['result'] == 'updated'

        student = client.get('/api/students/S4').get_json()
        assert student['name'] == 'Dev'
        assert student['class'] == 'Class 8A'

    def test_save_student_with_unknown_column(self, client):
        response = client.post('/api/students', json={'student_id': 'S1', 'colour': 'red'})
        assert response.status_code == 400

    def test_export(self, client, students):
        response = client.get('/api/students/export?section=a')

        assert response.status_code == 200
        assert response.mimetype == 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'
        assert 'attachment' in response.headers['Content-Disposition']
        df = pd.read_excel(io.BytesIO(response.data), dtype=str)
        assert list(df['student_id']) == ['S1', 'S3']

    def test_deleting_a_column_drops_its_values(self, client, students):
        client.delete('/api/columns/house')

        body = client.get('/api/students').get_json()
        assert all('house' not in s for s in body['data'])


class TestWorkStatusApi:
    def test_work_status_flow(self, client):
        late = client.post('/api/work-status', json={'task': 'Order blazers', 'status': 'pending',
                                                     'startDate': '2024-01-01', 'deadline': '2024-01-05'})
        early = client.post('/api/work-status', json={'task': 'Collect sizes', 'deadline': '2024-01-02'})

        assert late.status_code == 200
        assert late.get_json()['message'] == 'Work status added'
        early_id = early.get_json()['id']

        items = client.get('/api/work-status').get_json()['workStatus']
        assert [i['task'] for i in items] == ['Collect sizes', 'Order blazers']
        assert items[0]['status'] == 'pending'

        response = client.put(f"/api/work-status/{early_id}",
                              json={'status': 'completed', 'completedDate': '2024-01-02'})
        assert response.status_code == 200
        assert response.get_json() == {'message': 'Work status updated'}

        items = client.get('/api/work-status').get_json()['workStatus']
        assert items[0]['status'] == 'completed'
        assert items[0]['completed_date'] == '2024-01-02'

    def test_create_needs_deadline(self, client):
        response = client.post('/api/work-status', json={'task': 'Collect sizes'})
        assert response.status_code == 400

    def test_update_unknown_item(self, client):
        response = client.put('/api/work-status/42', json={'status': 'started'})
        assert response.status_code == 404

    def test_update_bad_status(self, client):
        item_id = client.post('/api/work-status', json={'task': 'Sizes', 'deadline': '2024-01-02'}).get_json()['id']
        assert client.put(f"/api/work-status/{item_id}", json={'status': 'done'}).status_code == 400


class TestFailures:
    def test_pool_exhaustion_is_retryable(self, app, client):
        pool = app.extensions['db_pool']
        held = [pool.acquire(), pool.acquire()]
        try:
            response = client.get('/api/columns')
        finally:
            for conn in held:
                pool.release(conn)

        assert response.status_code == 503
        assert response.headers['Retry-After'] == '1'
        assert client.get('/api/columns').status_code == 200

    def test_unexpected_errors_surface_message(self, client, monkeypatch):
        def broken(self):
            raise RuntimeError('database went away')

        monkeypatch.setattr(SchemaRegistry, 'list_columns', broken)

        response = client.get('/api/columns')
        assert response.status_code == 500
        assert response.get_json() == {'error': 'database went away'}


class TestLogLevel:
    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        monkeypatch.delenv('LOG_LEVEL', raising=False)
        monkeypatch.delenv('FLASK_DEBUG', raising=False)

    def test_default_is_info(self):
        assert log_level() == 'INFO'

    def test_flask_debug_turns_on_debug(self, monkeypatch):
        monkeypatch.setenv('FLASK_DEBUG', '1')
        assert log_level() == 'DEBUG'

    def test_log_level_wins(self, monkeypatch):
        monkeypatch.setenv('FLASK_DEBUG', '1')
        monkeypatch.setenv('LOG_LEVEL', 'warning')
        assert log_level() == 'WARNING'
