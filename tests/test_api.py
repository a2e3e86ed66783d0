import unittest

from support import isolate_settings, login, start_sql_app, write_settings


def _record(title='Show', save_time=None):
    record = {'title': title, 'source_name': 'Source', 'index': 1, 'total_episodes': 10,
              'play_time': 30, 'total_time': 1400, 'cover': '', 'year': '2024', 'search_title': title}
    if save_time is not None:
        record['save_time'] = save_time
    return record


class UserDataApiTests(unittest.TestCase):
    def setUp(self):
        isolate_settings(self)
        self.app, self.storage = start_sql_app(self)
        self.storage.create_user('alice', 'pw')
        self.client = self.app.test_client()
        login(self.client, 'alice', 'pw')

    def test_requires_login(self):
        anonymous = self.app.test_client()
        self.assertEqual(anonymous.get('/api/favorites').status_code, 401)

    def test_play_records(self):
        resp = self.client.post('/api/playrecords', json={'key': 'nokey', 'record': _record()})
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post('/api/playrecords', json={'key': 'src+1', 'record': {'title': 'x'}})
        self.assertEqual(resp.status_code, 400)

        resp = self.client.post('/api/playrecords', json={'key': 'src+1', 'record': _record()})
        self.assertEqual(resp.status_code, 200)
        records = self.client.get('/api/playrecords').get_json()['records']
        self.assertEqual(list(records), ['src+1'])
        self.assertGreater(records['src+1']['save_time'], 0)

        single = self.client.get('/api/playrecords?key=src%2B1').get_json()['record']
        self.assertEqual(single['title'], 'Show')

        self.client.delete('/api/playrecords?key=src%2B1')
        self.assertEqual(self.client.get('/api/playrecords').get_json()['records'], {})

    def test_saving_play_records_prunes_old_ones(self):
        write_settings('playrecords', {'max_per_user': 2})
        for i in range(13):
            self.client.post('/api/playrecords', json={'key': f'src+{i}', 'record': _record(f'T{i}', 1000 + i)})
        records = self.client.get('/api/playrecords').get_json()['records']
        self.assertEqual(sorted(records), ['src+11', 'src+12'])

    def test_favorites(self):
        favorite = {'title': 'Show', 'source_name': 'Source', 'total_episodes': 3, 'origin': 'tv'}
        resp = self.client.post('/api/favorites', json={'key': 'src+1', 'favorite': favorite})
        self.assertEqual(resp.status_code, 400)
        favorite['origin'] = 'live'
        self.assertEqual(self.client.post('/api/favorites', json={'key': 'src+1', 'favorite': favorite}).status_code, 200)
        self.assertEqual(self.client.get('/api/favorites?key=src%2B1').get_json()['favorite']['origin'], 'live')
        self.client.delete('/api/favorites')
        self.assertEqual(self.client.get('/api/favorites').get_json()['favorites'], {})

    def test_skip_configs(self):
        body = {'source': 'src', 'id': 7, 'config': {'enable': True, 'intro_time': 85, 'outro_time': 40}}
        self.assertEqual(self.client.post('/api/skipconfigs', json=body).status_code, 200)
        config = self.client.get('/api/skipconfigs?source=src&id=7').get_json()['config']
        self.assertEqual(config['intro_time'], 85)
        self.assertEqual(self.client.delete('/api/skipconfigs?source=src').status_code, 400)
        self.client.delete('/api/skipconfigs?source=src&id=7')
        self.assertEqual(self.client.get('/api/skipconfigs').get_json()['configs'], {})

    def test_play_record_numbers_are_checked(self):
        for field, value in (('play_time', 'abc'), ('index', [1]), ('save_time', True), ('total_time', 'NaN')):
            with self.subTest(field=field):
                record = dict(_record(), **{field: value})
                resp = self.client.post('/api/playrecords', json={'key': 'src+1', 'record': record})
                self.assertEqual(resp.status_code, 400)
                self.assertEqual(resp.get_json()['message'], f'{field} must be a number.')
        self.assertEqual(self.client.get('/api/playrecords').get_json()['records'], {})

        record = dict(_record(), index='2', play_time='95.6', save_time='1700000000000')
        self.assertEqual(self.client.post('/api/playrecords', json={'key': 'src+1', 'record': record}).status_code, 200)
        saved = self.client.get('/api/playrecords?key=src%2B1').get_json()['record']
        self.assertEqual((saved['index'], saved['play_time'], saved['save_time']), (2, 95, 1700000000000))

    def test_favorite_and_skip_config_numbers_are_checked(self):
        favorite = {'title': 'Show', 'source_name': 'Source', 'total_episodes': 'ten'}
        resp = self.client.post('/api/favorites', json={'key': 'src+1', 'favorite': favorite})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self.client.get('/api/favorites').get_json()['favorites'], {})

        body = {'source': 'src', 'id': 7, 'config': {'enable': True, 'intro_time': 'soon', 'outro_time': 40}}
        resp = self.client.post('/api/skipconfigs', json=body)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()['message'], 'intro_time must be a number.')
        self.assertEqual(self.client.get('/api/skipconfigs').get_json()['configs'], {})

    def test_search_history(self):
        self.assertEqual(self.client.post('/api/searchhistory', json={'keyword': '  '}).status_code, 400)
        history = self.client.post('/api/searchhistory', json={'keyword': ' dune '}).get_json()['history']
        self.assertEqual(history, ['dune'])
        self.client.delete('/api/searchhistory?keyword=dune')
        self.assertEqual(self.client.get('/api/searchhistory').get_json()['history'], [])

    def test_danmaku_filter(self):
        config = {'rules': [{'keyword': 'spoiler', 'type': 'normal', 'enabled': True}]}
        self.assertEqual(self.client.post('/api/danmaku-filter', json={'config': 'x'}).status_code, 400)
        self.client.post('/api/danmaku-filter', json={'config': config})
        self.assertEqual(self.client.get('/api/danmaku-filter').get_json()['config'], config)

    def test_notifications(self):
        from moontv.storage import new_notification
        notification = new_notification('announcement', 'Hello', 'Welcome')
        self.storage.add_notification('alice', notification)

        body = self.client.get('/api/notifications').get_json()
        self.assertEqual(body['unreadCount'], 1)
        self.client.post(f'/api/notifications/{notification["id"]}/read')
        self.assertEqual(self.client.get('/api/notifications').get_json()['unreadCount'], 0)
        self.client.delete(f'/api/notifications/{notification["id"]}')
        self.assertEqual(self.client.get('/api/notifications').get_json()['notifications'], [])


class MovieRequestApiTests(unittest.TestCase):
    def setUp(self):
        isolate_settings(self)
        write_settings('site', {'movie_request_cooldown_seconds': 0})
        self.app, self.storage = start_sql_app(self)
        self.storage.create_user('alice', 'pw')
        self.storage.create_user('bob', 'pw')
        self.storage.create_user('mod', 'pw', role='admin')

    def _client(self, username):
        client = self.app.test_client()
        password = 'owner-pass' if username == 'owner' else 'pw'
        self.assertEqual(login(client, username, password).status_code, 200)
        return client

    def _request(self, client, **overrides):
        body = {'title': 'Dune', 'mediaType': 'movie', 'tmdbId': 438631}
        body.update(overrides)
        return client.post('/api/movie-requests', json=body)

    def test_requests_merge_and_notify_admins(self):
        alice = self._client('alice')
        first = self._request(alice)
        self.assertEqual(first.status_code, 200)
        request_id = first.get_json()['request']['id']
        self.assertEqual(self._request(alice).status_code, 409)

        bob = self._client('bob')
        merged = self._request(bob).get_json()['request']
        self.assertEqual(merged['id'], request_id)
        self.assertEqual(merged['requestedBy'], ['alice', 'bob'])
        self.assertEqual(merged['requestCount'], 2)

        admin_notes = self.storage.get_notifications('mod')
        self.assertEqual([n['type'] for n in admin_notes], ['movie_request'])
        self.assertEqual(len(self.storage.get_notifications('owner')), 1)

        listing = bob.get('/api/movie-requests').get_json()
        self.assertEqual(listing['myRequests'], [request_id])

    def test_tv_seasons_are_separate_requests(self):
        alice = self._client('alice')
        s1 = self._request(alice, mediaType='tv', tmdbId=1399, season=1).get_json()['request']['id']
        s2 = self._request(alice, mediaType='tv', tmdbId=1399, season=2).get_json()['request']['id']
        self.assertNotEqual(s1, s2)

    def test_cooldown(self):
        write_settings('site', {'movie_request_cooldown_seconds': 300})
        alice = self._client('alice')
        self.assertEqual(self._request(alice).status_code, 200)
        self.assertEqual(self._request(alice, tmdbId=1).status_code, 429)

    def test_validation(self):
        alice = self._client('alice')
        self.assertEqual(self._request(alice, mediaType='game').status_code, 400)
        self.assertEqual(self._request(alice, title='').status_code, 400)
        self.assertEqual(self._request(alice, tmdbId='abc').status_code, 400)

    def test_fulfil_notifies_requesters_and_blocks_new_requests(self):
        alice = self._client('alice')
        request_id = self._request(alice).get_json()['request']['id']

        self.assertEqual(alice.post(f'/api/movie-requests/{request_id}/fulfill').status_code, 403)
        mod = self._client('mod')
        resp = mod.post(f'/api/movie-requests/{request_id}/fulfill', json={'source': 'src', 'id': '99'})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()['request']['status'], 'fulfilled')
        self.assertEqual(mod.post(f'/api/movie-requests/{request_id}/fulfill').status_code, 409)

        notes = self.storage.get_notifications('alice')
        self.assertEqual(notes[0]['type'], 'request_fulfilled')
        self.assertEqual(notes[0]['metadata']['id'], '99')

        bob = self._client('bob')
        self.assertEqual(self._request(bob).status_code, 409)

    def test_withdraw(self):
        alice = self._client('alice')
        bob = self._client('bob')
        request_id = self._request(alice).get_json()['request']['id']
        self._request(bob)

        self.assertEqual(alice.delete(f'/api/movie-requests/{request_id}').status_code, 200)
        self.assertEqual(self.storage.get_movie_request(request_id)['requestedBy'], ['bob'])
        self.assertEqual(alice.delete(f'/api/movie-requests/{request_id}').status_code, 403)

        self.assertEqual(bob.delete(f'/api/movie-requests/{request_id}').status_code, 200)
        self.assertIsNone(self.storage.get_movie_request(request_id))
        self.assertEqual(bob.delete(f'/api/movie-requests/{request_id}').status_code, 404)


class MusicDataApiTests(unittest.TestCase):
    def setUp(self):
        isolate_settings(self)
        self.app, self.storage = start_sql_app(self)
        self.storage.create_user('alice', 'pw')
        self.storage.create_user('bob', 'pw')
        self.client = self.app.test_client()
        login(self.client, 'alice', 'pw')

    def _song(self, song_id, platform='netease'):
        return {'platform': platform, 'id': song_id, 'name': f'Song {song_id}', 'artist': 'Artist'}

    def test_music_play_records(self):
        bad = self.client.post('/api/music/playrecords', json={'key': 'x', 'record': self._song('1', 'spotify')})
        self.assertEqual(bad.status_code, 400)

        self.client.post('/api/music/playrecords', json={'key': 'netease+1', 'record': self._song('1')})
        resp = self.client.post('/api/music/playrecords', json={'records': [
            {'key': 'qq+2', 'record': self._song('2', 'qq')},
            {'key': 'kuwo+3', 'record': self._song('3', 'kuwo')},
        ]})
        self.assertEqual(resp.get_json()['count'], 2)
        records = self.client.get('/api/music/playrecords').get_json()['records']
        self.assertEqual(sorted(records), ['kuwo+3', 'netease+1', 'qq+2'])

        self.client.delete('/api/music/playrecords')
        self.assertEqual(self.client.get('/api/music/playrecords').get_json()['records'], {})

    def test_music_numbers_are_checked(self):
        resp = self.client.post('/api/music/playrecords', json={'key': 'netease+1', 'record': dict(self._song('1'), duration='long')})
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post('/api/music/playrecords', json={'records': [
            {'key': 'qq+2', 'record': self._song('2', 'qq')},
            {'key': 'kuwo+3', 'record': dict(self._song('3', 'kuwo'), play_time='x')},
        ]})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self.client.get('/api/music/playrecords').get_json()['records'], {})

        record = dict(self._song('1'), play_time='12.5', duration=200)
        self.client.post('/api/music/playrecords', json={'key': 'netease+1', 'record': record})
        saved = self.client.get('/api/music/playrecords?key=netease%2B1').get_json()['record']
        self.assertEqual((saved['play_time'], saved['duration']), (12.5, 200))

        playlist_id = self.client.post('/api/music/playlists', json={'name': 'Mix'}).get_json()['playlist']['id']
        resp = self.client.post(f'/api/music/playlists/{playlist_id}/songs', json={'song': dict(self._song('1'), duration={})})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self.client.get(f'/api/music/playlists/{playlist_id}').get_json()['songs'], [])

    def test_playlists(self):
        self.assertEqual(self.client.post('/api/music/playlists', json={'name': ' '}).status_code, 400)
        playlist = self.client.post('/api/music/playlists', json={'name': 'Mix'}).get_json()['playlist']
        playlist_id = playlist['id']

        self.client.post(f'/api/music/playlists/{playlist_id}/songs', json={'song': self._song('1')})
        songs = self.client.post(f'/api/music/playlists/{playlist_id}/songs', json={'song': self._song('2')}).get_json()['songs']
        self.assertEqual([s['id'] for s in songs], ['1', '2'])

        resp = self.client.put(f'/api/music/playlists/{playlist_id}/songs/order', json={'songOrders': [
            {'platform': 'netease', 'songId': '1', 'sortOrder': 2},
            {'platform': 'netease', 'songId': '2', 'sortOrder': 1},
        ]})
        self.assertEqual([s['id'] for s in resp.get_json()['songs']], ['2', '1'])

        resp = self.client.patch(f'/api/music/playlists/{playlist_id}', json={'name': 'Renamed'})
        self.assertEqual(resp.get_json()['playlist']['name'], 'Renamed')

        self.client.delete(f'/api/music/playlists/{playlist_id}/songs?platform=netease&id=1')
        detail = self.client.get(f'/api/music/playlists/{playlist_id}').get_json()
        self.assertEqual([s['id'] for s in detail['songs']], ['2'])

        self.assertEqual(self.client.delete(f'/api/music/playlists/{playlist_id}').status_code, 200)
        self.assertEqual(self.client.get('/api/music/playlists').get_json()['playlists'], [])

    def test_playlists_are_private(self):
        playlist_id = self.client.post('/api/music/playlists', json={'name': 'Mine'}).get_json()['playlist']['id']
        bob = self.app.test_client()
        login(bob, 'bob', 'pw')
        self.assertEqual(bob.get(f'/api/music/playlists/{playlist_id}').status_code, 404)
        self.assertEqual(bob.delete(f'/api/music/playlists/{playlist_id}').status_code, 404)
        self.assertEqual(bob.post(f'/api/music/playlists/{playlist_id}/songs', json={'song': self._song('1')}).status_code, 404)


if __name__ == '__main__':
    unittest.main()
