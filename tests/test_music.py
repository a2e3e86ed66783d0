import os
import unittest
from unittest.mock import MagicMock, patch

import requests

from moontv import music
from moontv.storage import merge_admin_config, set_storage

from support import isolate_settings, make_app


def _tunehub(enabled=True, api_key='key-123'):
    return {'enabled': enabled, 'base_url': 'https://hub.test/api', 'api_key': api_key}


def _json_response(payload, status=200):
    response = MagicMock()
    response.ok = status < 400
    response.status_code = status
    response.json.return_value = payload
    return response


class TemplateTests(unittest.TestCase):
    def test_arithmetic_over_variables(self):
        context = {'page': 3, 'pageSize': 20}
        self.assertEqual(music.evaluate_expression('(page - 1) * pageSize', context), 40)
        self.assertEqual(music.evaluate_expression('page // 2 + page % 2', context), 2)
        self.assertEqual(music.evaluate_expression('-page', context), -3)

    def test_rendering_substitutes_nested_values(self):
        config = {
            'offset': '{{(page - 1) * limit}}',
            'query': ['{{keyword}}', 'static'],
            'pn': '{{page / 1}}',
            'label': 'p{{page + "x"}}',
        }
        context = {'page': 2, 'limit': 30, 'keyword': 'jay'}
        self.assertEqual(music.render_template_value(config, context), {
            'offset': '30',
            'query': ['jay', 'static'],
            'pn': '2',
            'label': 'p2x',
        })

    def test_unsafe_or_unknown_expressions_render_zero(self):
        context = {'page': 1}
        self.assertEqual(music.render_template_value('{{__import__("os")}}', context), '0')
        self.assertEqual(music.render_template_value('{{missing + 1}}', context), '0')
        self.assertEqual(music.render_template_value('{{page.real}}', context), '0')

    def test_numeric_coercion(self):
        self.assertEqual(music._numeric('20'), 20)
        self.assertEqual(music._numeric('1.5'), 1.5)
        self.assertEqual(music._numeric('jay'), 'jay')
        self.assertEqual(music._numeric(''), '')

    def test_kuwo_images_are_proxied(self):
        data = {'list': [{'pic': 'http://img1.kwcdn.kuwo.cn/star/a.jpg', 'name': 'x'}],
                'cover': 'https://img1.kwcdn.kuwo.cn/b.jpg'}
        proxied = music.proxy_kuwo_images(data)
        self.assertEqual(proxied['list'][0]['pic'],
                         '/api/music/proxy?url=http%3A%2F%2Fimg1.kwcdn.kuwo.cn%2Fstar%2Fa.jpg')
        self.assertEqual(proxied['cover'], 'https://img1.kwcdn.kuwo.cn/b.jpg')


class TuneHubConfigTests(unittest.TestCase):
    def setUp(self):
        isolate_settings(self)

    def test_admin_config_wins_over_environment(self):
        config = merge_admin_config({'MusicConfig': {'TuneHubEnabled': True, 'TuneHubBaseUrl': 'https://a.test/api/'}})
        with patch('moontv.music.load_admin_config', return_value=config), \
                patch.dict(os.environ, {'TUNEHUB_BASE_URL': 'https://env.test', 'TUNEHUB_API_KEY': 'env-key'}):
            tunehub = music.get_tunehub_config()
        self.assertEqual(tunehub, {'enabled': True, 'base_url': 'https://a.test/api', 'api_key': 'env-key'})

    def test_defaults(self):
        set_storage(None)
        tunehub = music.get_tunehub_config()
        self.assertFalse(tunehub['enabled'])
        self.assertEqual(tunehub['base_url'], 'https://tunehub.sayqz.com/api')


class ExecuteMethodTests(unittest.TestCase):
    def setUp(self):
        isolate_settings(self)
        music._method_config_cache.clear()
        music._response_cache.clear()

    @patch('moontv.music.requests.request')
    @patch('moontv.music.requests.get')
    def test_get_method_renders_params_and_keeps_transform(self, mock_get, mock_request):
        mock_get.return_value = _json_response({'data': {
            'method': 'GET',
            'url': 'https://music.test/search',
            'params': {'s': '{{keyword}}', 'offset': '{{(page - 1) * limit}}'},
            'headers': {'Referer': 'https://music.test'},
            'transform': 'function(r){return r}',
        }})
        mock_request.return_value = _json_response({'result': []})

        data = music.execute_method('https://hub.test/api', 'netease', 'search',
                                    {'keyword': 'jay', 'page': '2', 'limit': '30'})
        self.assertEqual(data, {'result': [], '__transform': 'function(r){return r}'})
        mock_get.assert_called_once()
        self.assertEqual(mock_get.call_args.args[0], 'https://hub.test/api/v1/methods/netease/search')

        method, url = mock_request.call_args.args
        self.assertEqual((method, url), ('GET', 'https://music.test/search'))
        self.assertEqual(mock_request.call_args.kwargs['params'], {'s': 'jay', 'offset': '30'})
        self.assertEqual(mock_request.call_args.kwargs['headers']['Referer'], 'https://music.test')

        # Method configs are cached.
        music.execute_method('https://hub.test/api', 'netease', 'search', {'keyword': 'x', 'page': 1, 'limit': 1})
        self.assertEqual(mock_get.call_count, 1)

    @patch('moontv.music.requests.request')
    @patch('moontv.music.requests.get')
    def test_post_method_sends_json_body(self, mock_get, mock_request):
        mock_get.return_value = _json_response({'data': {
            'method': 'POST', 'url': 'https://music.test/toplist', 'body': {'id': '{{id}}'},
        }})
        mock_request.return_value = _json_response({'songs': []})
        music.execute_method('https://hub.test/api', 'qq', 'toplist', {'id': '26'})
        self.assertEqual(mock_request.call_args.kwargs['json'], {'id': '26'})
        self.assertNotIn('params', mock_request.call_args.kwargs)

    @patch('moontv.music.requests.get')
    def test_missing_method_config(self, mock_get):
        mock_get.return_value = _json_response({'data': None})
        with self.assertRaises(music.MusicError):
            music.get_method_config('https://hub.test/api', 'qq', 'nope')


class MusicRouteTests(unittest.TestCase):
    def setUp(self):
        isolate_settings(self)
        set_storage(None)
        music._method_config_cache.clear()
        music._response_cache.clear()
        self.client = make_app().test_client()
        config_patch = patch('moontv.music.get_tunehub_config', return_value=_tunehub())
        self.tunehub = config_patch.start()
        self.addCleanup(config_patch.stop)

    def test_disabled(self):
        self.tunehub.return_value = _tunehub(enabled=False)
        self.assertEqual(self.client.get('/api/music?action=toplists&platform=qq').status_code, 403)
        self.assertEqual(self.client.post('/api/music', json={'action': 'parse'}).status_code, 403)

    def test_parameter_validation(self):
        cases = [
            '/api/music',
            '/api/music?action=toplists',
            '/api/music?action=playlist&platform=qq',
            '/api/music?action=search&platform=qq',
            '/api/music?action=lyrics&platform=qq',
        ]
        for url in cases:
            with self.subTest(url=url):
                self.assertEqual(self.client.get(url).status_code, 400)

    @patch('moontv.music.execute_method')
    def test_responses_are_cached(self, mock_execute):
        mock_execute.return_value = {'list': [1, 2]}
        for _ in range(2):
            resp = self.client.get('/api/music?action=search&platform=kuwo&keyword=jay')
            self.assertEqual(resp.get_json(), {'list': [1, 2]})
        mock_execute.assert_called_once_with(
            'https://hub.test/api', 'kuwo', 'search',
            {'keyword': 'jay', 'page': '1', 'pageSize': '20', 'limit': '20'},
        )

    @patch('moontv.music.execute_method', side_effect=requests.Timeout('slow'))
    def test_upstream_failure(self, _mock_execute):
        resp = self.client.get('/api/music?action=toplists&platform=qq')
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.get_json()['details'], 'slow')

    def test_parse_needs_api_key(self):
        self.tunehub.return_value = _tunehub(api_key='')
        resp = self.client.post('/api/music', json={'action': 'parse', 'platform': 'qq', 'ids': ['1']})
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.get_json()['code'], -1)

    def test_post_action_validation(self):
        self.assertEqual(self.client.post('/api/music', json={}).status_code, 400)
        self.assertEqual(self.client.post('/api/music', json={'action': 'search'}).status_code, 400)
        self.assertEqual(self.client.post('/api/music', json={'action': 'parse', 'platform': 'qq'}).status_code, 400)

    @patch('moontv.music.requests.post')
    def test_parse_success_is_cached(self, mock_post):
        payload = {'code': 0, 'data': [{'id': '1', 'url': 'https://cdn.test/1.mp3'}]}
        mock_post.return_value = _json_response(payload)
        body = {'action': 'parse', 'platform': 'qq', 'ids': ['1']}
        self.assertEqual(self.client.post('/api/music', json=body).get_json(), payload)
        self.assertEqual(self.client.post('/api/music', json=body).get_json(), payload)
        mock_post.assert_called_once()
        self.assertEqual(mock_post.call_args.kwargs['headers']['X-API-Key'], 'key-123')
        self.assertEqual(mock_post.call_args.kwargs['json']['quality'], '320k')

    @patch('moontv.music.requests.post')
    def test_parse_error_is_not_cached(self, mock_post):
        mock_post.return_value = _json_response({'code': 403, 'message': 'quota exceeded'}, status=403)
        body = {'action': 'parse', 'platform': 'qq', 'ids': '1', 'quality': 'flac'}
        resp = self.client.post('/api/music', json=body).get_json()
        self.assertEqual(resp, {'code': 403, 'message': 'quota exceeded', 'error': 'quota exceeded'})
        self.client.post('/api/music', json=body)
        self.assertEqual(mock_post.call_count, 2)

    def test_image_proxy_rejects_other_schemes(self):
        self.assertEqual(self.client.get('/api/music/proxy?url=file:///etc/passwd').status_code, 400)
        self.assertEqual(self.client.get('/api/music/proxy').status_code, 400)

    @patch('moontv.music.requests.get')
    def test_image_proxy_streams(self, mock_get):
        upstream = MagicMock()
        upstream.ok = True
        upstream.headers = {'Content-Type': 'image/jpeg'}
        upstream.iter_content.return_value = [b'abc', b'', b'def']
        mock_get.return_value = upstream
        resp = self.client.get('/api/music/proxy?url=http://img1.kwcdn.kuwo.cn/a.jpg')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_data(), b'abcdef')
        self.assertEqual(resp.headers['Content-Type'], 'image/jpeg')
        self.assertIn('max-age', resp.headers['Cache-Control'])
        upstream.close.assert_called()

    @patch('moontv.music.requests.get', side_effect=requests.ConnectionError('down'))
    def test_image_proxy_network_error(self, _mock_get):
        self.assertEqual(self.client.get('/api/music/proxy?url=http://x.test/a.jpg').status_code, 502)


if __name__ == '__main__':
    unittest.main()
