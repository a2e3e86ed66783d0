import os
import unittest
from unittest.mock import MagicMock, patch

import requests

from moontv import m3u8
from moontv.storage import set_storage

from support import isolate_settings, make_app

PLAYLIST = '\n'.join([
    '#EXTM3U',
    '#EXT-X-VERSION:3',
    '#EXT-X-KEY:METHOD=AES-128,URI="key.bin"',
    '#EXTINF:10.0,',
    'seg-001.ts',
    '#EXT-X-DISCONTINUITY',
    '#EXTINF:5.0,',
    '/ads/promo-01.ts',
    '#EXT-X-DISCONTINUITY',
    '#EXTINF:10.0,',
    'https://cdn.example.com/seg-002.ts',
    '#EXT-X-ENDLIST',
])


class FilterAdsTests(unittest.TestCase):
    def test_drops_discontinuities_and_ad_segments(self):
        filtered = m3u8.filter_ads(PLAYLIST)
        self.assertNotIn('#EXT-X-DISCONTINUITY', filtered)
        self.assertNotIn('promo', filtered)
        self.assertEqual(filtered.count('#EXTINF'), 2)
        self.assertIn('seg-001.ts', filtered)

    def test_custom_keywords_replace_defaults(self):
        content = '#EXTINF:3,\nhttps://x.test/ads/a.ts\n#EXTINF:3,\nhttps://x.test/SPOT-b.ts'
        filtered = m3u8.filter_ads(content, ['spot'])
        self.assertIn('/ads/a.ts', filtered)
        self.assertNotIn('SPOT-b', filtered)

    def test_empty_content(self):
        self.assertEqual(m3u8.filter_ads(''), '')
        self.assertEqual(m3u8.filter_ads(None), '')


class ResolveLinksTests(unittest.TestCase):
    base = 'https://media.example.com/vod/show/index.m3u8'
    origin = 'https://tv.example.org'

    def test_relative_segments_and_keys_become_absolute(self):
        resolved = m3u8.resolve_links(PLAYLIST, self.base, self.origin).split('\n')
        self.assertIn('#EXT-X-KEY:METHOD=AES-128,URI="https://media.example.com/vod/show/key.bin"', resolved)
        self.assertIn('https://media.example.com/vod/show/seg-001.ts', resolved)
        self.assertIn('https://media.example.com/ads/promo-01.ts', resolved)
        self.assertIn('https://cdn.example.com/seg-002.ts', resolved)

    def test_variant_playlists_route_through_proxy(self):
        master = '#EXTM3U\n#EXT-X-STREAM-INF:BANDWIDTH=800000\nhd/playlist\nlow.m3u8'
        resolved = m3u8.resolve_links(master, self.base, self.origin, source='src', token='t k').split('\n')
        self.assertEqual(
            resolved[2],
            'https://tv.example.org/api/proxy-m3u8?url=https%3A%2F%2Fmedia.example.com%2Fvod%2Fshow%2Fhd%2Fplaylist'
            '&source=src&token=t%20k',
        )
        self.assertTrue(resolved[3].startswith('https://tv.example.org/api/proxy-m3u8?url='))

    def test_proxy_url_omits_empty_params(self):
        self.assertEqual(
            m3u8.proxy_url('https://a.test/x.m3u8', 'http://h'),
            'http://h/api/proxy-m3u8?url=https%3A%2F%2Fa.test%2Fx.m3u8',
        )


class ProxyRouteTests(unittest.TestCase):
    def setUp(self):
        isolate_settings(self)
        set_storage(None)
        self.client = make_app().test_client()

    def _upstream(self, text=PLAYLIST, status=200):
        response = MagicMock()
        response.ok = status < 400
        response.status_code = status
        response.text = text
        return response

    def test_missing_url(self):
        self.assertEqual(self.client.get('/api/proxy-m3u8').status_code, 400)

    def test_token_is_enforced_when_configured(self):
        with patch.dict(os.environ, {'PROXY_M3U8_TOKEN': 'secret'}):
            resp = self.client.get('/api/proxy-m3u8?url=https://a.test/x.m3u8&token=wrong')
        self.assertEqual(resp.status_code, 401)

    @patch('moontv.m3u8.requests.get')
    def test_rewrites_playlist(self, mock_get):
        mock_get.return_value = self._upstream()
        with patch.dict(os.environ, {'SITE_BASE': 'https://tv.example.org/'}):
            resp = self.client.get('/api/proxy-m3u8?url=https://media.example.com/vod/index.m3u8')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.headers['Content-Type'], 'application/vnd.apple.mpegurl')
        self.assertEqual(resp.headers['Access-Control-Allow-Origin'], '*')
        body = resp.get_data(as_text=True)
        self.assertIn('https://media.example.com/vod/seg-001.ts', body)
        self.assertNotIn('promo', body)

        headers = mock_get.call_args.kwargs['headers']
        self.assertEqual(headers['Referer'], 'https://media.example.com/')

    @patch('moontv.m3u8.requests.get')
    def test_upstream_status_is_passed_through(self, mock_get):
        mock_get.return_value = self._upstream('', status=404)
        resp = self.client.get('/api/proxy-m3u8?url=https://a.test/x.m3u8')
        self.assertEqual(resp.status_code, 404)

    @patch('moontv.m3u8.requests.get', side_effect=requests.ConnectionError('refused'))
    def test_network_failure(self, _mock_get):
        resp = self.client.get('/api/proxy-m3u8?url=https://a.test/x.m3u8')
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.get_json()['details'], 'refused')


if __name__ == '__main__':
    unittest.main()
