import tempfile
import unittest
from io import BytesIO

from PIL import Image

from streamwheel.app import create_app, parse_message, socket_alive

FULL = {'x-admin-pass': 'full-pass'}
VIEW = {'x-admin-pass': 'view-pass'}


def make_png(size=(800, 800)):
    buffer = BytesIO()
    Image.new('RGBA', size, (0, 128, 255, 255)).save(buffer, format='PNG')
    return buffer.getvalue()


def unwrap(args):
    if isinstance(args, list) and len(args) == 1:
        return args[0]
    return args


class AppTestCase(unittest.TestCase):

    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.app, self.socketio = create_app({
            'TESTING': True,
            'PROFILES_DIR': tmp.name,
            'ADMIN_PASS': 'full-pass',
            'ADMIN_VIEW_PASS': 'view-pass',
            'API_KEY': 'api-key',
            'UPLOAD_MAX_BYTES': 512 * 1024,
            'SOCKETIO_ASYNC_MODE': 'threading',
            'PUBLIC_BASE_URL': 'https://wheel.example',
        })
        self.http = self.app.test_client()
        self.wheel = self.app.extensions['streamwheel']

    def connect(self, **subscribe):
        client = self.socketio.test_client(self.app)
        self.addCleanup(lambda: client.is_connected() and client.disconnect())
        if subscribe:
            client.send({'type': 'subscribe', **subscribe})
        return client

    @staticmethod
    def messages(client):
        return [unwrap(r['args']) for r in client.get_received() if r['name'] == 'message']

    def token(self, profile):
        return self.wheel.store.get_token(profile)


class TestRealtimeFlow(AppTestCase):

    def test_demo_scenario(self):
        self.http.post('/admin/create-profile', json={'name': 'demo'}, headers=FULL)
        viewer = self.connect(profile='demo', token=self.token('demo'))
        admin = self.connect(profile='demo', adminPass='view-pass')

        snapshot = self.messages(viewer)
        self.assertEqual([m['type'] for m in snapshot], ['config', 'leaderboard'])
        self.assertEqual(snapshot[0]['role'], 'TOKEN')
        self.assertEqual([s['color'] for s in snapshot[0]['config']['segments']], ['', '', ''])
        self.assertEqual(self.messages(admin)[0]['role'], 'ADMIN_VIEW')

        res = self.http.post('/api/spin', json={'profile': 'demo', 'index': 1, 'test': False},
                             headers={'x-api-key': 'api-key'})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()['payload']['label'], '2x Prize')

        for client in (viewer, admin):
            board, spin = self.messages(client)
            self.assertEqual(board, {'type': 'leaderboard', 'profile': 'demo', 'stats': {'2x Prize': 1}})
            self.assertEqual(spin['type'], 'spin')
            self.assertEqual(spin['label'], '2x Prize')
            self.assertIs(spin['test'], False)

    def test_raw_json_subscribe(self):
        client = self.socketio.test_client(self.app)
        self.addCleanup(client.disconnect)
        client.send('{"type": "subscribe", "profile": "default", "adminPass": "full-pass"}')
        self.assertEqual(self.messages(client)[0]['type'], 'config')

    def test_stale_token_is_refused_and_closed(self):
        client = self.connect(profile='default', token='stale')
        self.assertFalse(client.is_connected())
        self.assertEqual(self.wheel.hub.subscribers('default'), [])

    def test_events_stay_in_their_profile(self):
        self.wheel.store.ensure('other')
        here = self.connect(profile='default', adminPass='full-pass')
        there = self.connect(profile='other', adminPass='full-pass')
        self.messages(here)
        self.messages(there)

        self.http.post('/api/preview-flash', json={'profile': 'default'}, headers=VIEW)

        self.assertEqual(self.messages(here), [{'type': 'previewFlash', 'profile': 'default'}])
        self.assertEqual(self.messages(there), [])

    def test_disconnect_unregisters(self):
        client = self.connect(profile='default', adminPass='full-pass')
        self.assertEqual(len(self.wheel.hub.subscribers('default')), 1)
        client.disconnect()
        self.assertEqual(self.wheel.hub.subscribers('default'), [])

    def test_liveness_check_reaps_closed_sockets(self):
        self.connect(profile='default', adminPass='full-pass')
        (alive_sid,) = self.wheel.hub.subscribers('default')
        gone = self.connect(profile='default', adminPass='full-pass')
        (gone_sid,) = set(self.wheel.hub.subscribers('default')) - {alive_sid}
        gone.disconnect()

        is_alive = socket_alive(self.socketio)
        self.assertTrue(is_alive(alive_sid))
        self.assertFalse(is_alive(gone_sid))

        # a registration that outlived its socket
        self.wheel.hub.subscribe(gone_sid, 'default', admin_pass='full-pass')
        self.assertEqual(self.wheel.hub.reap(is_alive), [gone_sid])
        self.assertEqual(self.wheel.hub.subscribers('default'), [alive_sid])

    def test_config_save_is_broadcast(self):
        client = self.connect(profile='default', token=self.token('default'))
        self.messages(client)

        res = self.http.post('/admin/config/default', json={'flashOpacity': 0.8, 'bogus': 1}, headers=VIEW)

        self.assertEqual(res.status_code, 200)
        (event,) = self.messages(client)
        self.assertEqual(event['type'], 'config')
        self.assertEqual(event['config']['flashOpacity'], 0.8)
        self.assertNotIn('bogus', event['config'])

    def test_regenerate_token_evicts_viewers(self):
        old_token = self.token('default')
        viewer = self.connect(profile='default', token=old_token)
        admin = self.connect(profile='default', adminPass='full-pass')
        self.messages(admin)

        res = self.http.post('/admin/regenerate-token/default', headers=FULL)
        new_token = res.get_json()['token']

        self.assertNotEqual(new_token, old_token)
        self.assertFalse(viewer.is_connected())
        self.assertEqual(self.messages(admin)[-1]['config']['token'], new_token)
        self.assertFalse(self.connect(profile='default', token=old_token).is_connected())
        self.assertTrue(self.connect(profile='default', token=new_token).is_connected())

    def test_unknown_messages_are_ignored(self):
        client = self.connect()
        client.send({'type': 'dance'})
        client.send('not json')
        self.assertTrue(client.is_connected())
        self.assertEqual(self.messages(client), [])


class TestAdminApi(AppTestCase):

    def test_admin_routes_need_a_valid_secret(self):
        for headers in ({}, {'x-admin-pass': 'guess'}):
            self.assertEqual(self.http.get('/admin/list-profiles', headers=headers).status_code, 403)
        res = self.http.get('/admin/list-profiles', headers=VIEW)
        self.assertEqual(res.get_json(), ['default'])

    def test_full_only_routes(self):
        for method, path in (('post', '/admin/create-profile'),
                             ('post', '/admin/regenerate-token/default'),
                             ('post', '/admin/clear-logs/default'),
                             ('post', '/admin/reset-leaderboard/default'),
                             ('get', '/admin/logs-archive/default'),
                             ('delete', '/admin/upload/default/x.png')):
            res = getattr(self.http, method)(path, json={'name': 'x'}, headers=VIEW)
            self.assertEqual(res.status_code, 403, path)
            self.assertEqual(res.get_json()['error'], 'forbidden')

    def test_create_and_get_config(self):
        res = self.http.post('/admin/create-profile', json={'name': 'My Show!'}, headers=FULL)
        self.assertEqual(res.get_json(), {'ok': True, 'profile': 'MyShow'})

        res = self.http.get('/admin/config/MyShow', headers=VIEW)
        body = res.get_json()
        self.assertEqual(body['role'], 'ADMIN_VIEW')
        self.assertEqual(len(body['config']['segments']), 3)

        self.assertEqual(self.http.post('/admin/create-profile', json={}, headers=FULL).status_code, 400)

    def test_save_config_requires_json_object(self):
        res = self.http.post('/admin/config/default', data='nope', content_type='text/plain', headers=FULL)
        self.assertEqual(res.status_code, 400)
        res = self.http.post('/admin/config/default', json=[1, 2], headers=FULL)
        self.assertEqual(res.status_code, 400)

    def test_save_config_ignores_oversized_numbers(self):
        body = '{"flashOpacity": 1' + '0' * 400 + ', "flashColor": "#00ff00"}'
        res = self.http.post('/admin/config/default', data=body, content_type='application/json', headers=FULL)
        self.assertEqual(res.status_code, 200)
        config = res.get_json()['config']
        self.assertEqual(config['flashOpacity'], 0.6)
        self.assertEqual(config['flashColor'], '#00ff00')

    def test_logs_and_archives(self):
        self.http.post('/api/spin', json={'profile': 'default', 'index': 0}, headers=VIEW)
        logs = self.http.get('/admin/logs/default', headers=VIEW).get_json()['logs']
        self.assertIn('Admin -> 1x Prize', logs)

        archive = self.http.post('/admin/clear-logs/default', headers=FULL).get_json()['archive']
        self.assertEqual(self.http.get('/admin/logs-archive/default', headers=FULL).get_json(), [archive])

        view = self.http.get(f'/admin/logs-archive-view/default/{archive}', headers=FULL)
        self.assertEqual(view.mimetype, 'text/plain')
        self.assertIn('Admin -> 1x Prize', view.get_data(as_text=True))

        download = self.http.get(f'/admin/logs-archive-download/default/{archive}', headers=FULL)
        self.assertIn('attachment', download.headers['Content-Disposition'])
        download.close()

        missing = self.http.get('/admin/logs-archive-view/default/nope.txt', headers=FULL)
        self.assertEqual(missing.status_code, 404)

        live = self.http.get('/admin/logs/default', headers=VIEW).get_json()['logs']
        self.assertNotIn('1x Prize', live)
        self.assertIn('ADMIN_FULL cleared logs (archived)', live)

    def test_reset_leaderboard(self):
        self.http.post('/api/spin', json={'index': 2}, headers=FULL)
        client = self.connect(profile='default', adminPass='full-pass')
        self.assertEqual(self.messages(client)[1]['stats'], {'Nugget': 1})

        self.assertEqual(self.http.post('/admin/reset-leaderboard/default', headers=FULL).status_code, 200)
        self.assertEqual(self.messages(client), [{'type': 'leaderboard', 'profile': 'default', 'stats': {}}])
        self.assertEqual(self.wheel.store.get_leaderboard('default'), {})

    def test_upload_and_delete_logo(self):
        res = self.http.post(
            '/admin/upload-logo/default',
            data={'logo': (BytesIO(make_png()), 'logo.png', 'image/png')},
            content_type='multipart/form-data',
            headers=VIEW,
        )
        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertEqual(body['url'], f"/public/uploads/default/{body['filename']}")

        image = self.http.get(body['url'])
        self.assertEqual(image.status_code, 200)
        with Image.open(BytesIO(image.get_data())) as img:
            self.assertEqual(img.size, (512, 512))
        image.close()

        res = self.http.delete(f"/admin/upload/default/{body['filename']}", headers=FULL)
        self.assertEqual(res.get_json(), {'ok': True, 'deleted': True})
        self.assertEqual(self.wheel.store.get_config('default')['logoHistory'], [])
        self.assertEqual(self.http.get(body['url']).status_code, 404)

    def test_raw_body_upload(self):
        res = self.http.post('/admin/upload-logo/default', data=make_png((64, 32)),
                             content_type='image/png', headers=FULL)
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.get_json()['filename'].endswith('.png'))

    def test_bad_uploads(self):
        res = self.http.post('/admin/upload-logo/default', data=b'garbage',
                             content_type='image/png', headers=FULL)
        self.assertEqual(res.status_code, 400)
        res = self.http.post('/admin/upload-logo/default', data=b'x' * (600 * 1024),
                             content_type='image/png', headers=FULL)
        self.assertEqual(res.status_code, 413)
        self.assertEqual(self.wheel.store.get_config('default')['logoHistory'], [])

    def test_qr_code(self):
        body = self.http.get('/admin/qr/default', headers=VIEW).get_json()
        self.assertTrue(body['qr_code'].startswith('data:image/png;base64,'))
        self.assertTrue(body['url'].startswith('https://wheel.example/public/?profile=default&token='))

    def test_status(self):
        self.connect(profile='default', adminPass='full-pass')
        body = self.http.get('/api/status', headers=FULL).get_json()
        self.assertEqual(body['hub']['connected'], 1)
        self.assertEqual(body['role'], 'ADMIN_FULL')


class TestPublicApi(AppTestCase):

    def test_public_reads_need_the_token(self):
        token = self.token('default')
        ok = self.http.get(f'/public/config?profile=default&token={token}')
        self.assertEqual(ok.get_json()['token'], token)
        self.assertEqual(self.http.get(f'/public/leaderboard/data/default?token={token}').get_json(), {})
        self.assertEqual(self.http.get(f'/public/logs/default?token={token}').get_json(), [])

        for path in ('/public/config?profile=default&token=bad',
                     '/public/leaderboard/data/default?token=',
                     '/public/logs/default'):
            self.assertEqual(self.http.get(path).status_code, 403, path)

    def test_admin_can_read_public_logs(self):
        self.assertEqual(self.http.get('/public/logs/default', headers=VIEW).status_code, 200)

    def test_unknown_profile_looks_like_bad_token(self):
        unknown = self.http.get('/public/config?profile=ghost&token=x')
        known = self.http.get('/public/config?profile=default&token=x')
        self.assertEqual(unknown.status_code, known.status_code)
        self.assertEqual(unknown.get_json(), known.get_json())
        self.assertFalse(self.wheel.store.exists('ghost'))

    def test_spin_needs_credentials(self):
        self.assertEqual(self.http.post('/api/spin', json={}).status_code, 403)
        self.assertEqual(self.http.post('/api/spin', json={}, headers={'x-api-key': 'nope'}).status_code, 403)
        self.assertEqual(self.http.post('/api/spin', json={}, headers={'x-admin-pass': 'nope'}).status_code, 403)
        res = self.http.post('/api/spin', json={'test': True}, headers={'x-api-key': 'api-key'})
        self.assertEqual(res.get_json()['payload']['user'], 'Viewer')
        self.assertEqual(self.wheel.store.get_leaderboard('default'), {})

    def test_preview_flash_needs_admin(self):
        self.assertEqual(self.http.post('/api/preview-flash', json={}).status_code, 403)

    def test_health(self):
        self.assertEqual(self.http.get('/health').get_json(), {'status': 'healthy'})


class TestParseMessage(unittest.TestCase):

    def test_parse(self):
        self.assertEqual(parse_message('{"type": "subscribe"}'), {'type': 'subscribe'})
        self.assertEqual(parse_message({'type': 'subscribe'}), {'type': 'subscribe'})
        self.assertIsNone(parse_message('[1]'))
        self.assertIsNone(parse_message('{'))
        self.assertIsNone(parse_message(7))


if __name__ == '__main__':
    unittest.main()
