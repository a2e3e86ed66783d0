import unittest
from unittest.mock import MagicMock, patch

import requests

from moontv import anime
from moontv.storage import load_admin_config, save_admin_config

from support import isolate_settings, start_sql_app

FEED = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"><channel>
  <title>search</title>
  <item>
    <title>[Lilith-Raws] Frieren - 13 [Baha][WEB-DL][1080p]</title>
    <link>https://acg.rip/t/13</link>
    <enclosure url="https://acg.rip/t/13.torrent" type="application/x-bittorrent"/>
    <pubDate>Fri, 05 Jan 2024 12:00:00 +0800</pubDate>
  </item>
  <item>
    <title>[Other] Frieren - 12 [1080p]</title>
    <link>https://acg.rip/t/12b</link>
  </item>
  <item>
    <title>[Lilith-Raws] Frieren - 12 [Baha][WEB-DL][1080p]</title>
    <link>https://acg.rip/t/12</link>
  </item>
  <item>
    <title>[Lilith-Raws] Spy x Family - 14 [1080p]</title>
    <link>https://acg.rip/t/spy</link>
  </item>
  <item><title> </title></item>
</channel></rss>"""


class EpisodeParsingTests(unittest.TestCase):
    def test_extract_episode(self):
        cases = [
            ('[Lilith-Raws] Frieren - 12 [Baha][WEB-DL][1080p]', 12),
            ('葬送的芙莉莲 第05话', 5),
            ('[Sakurato] Spy x Family [07][1080P]', 7),
            ('[Group] Show [08v2 END]', 8),
            ('【喵萌奶茶屋】Show【10】', 10),
            ('Show S02E03 1080p WEB', 3),
            ('Show EP 04', 4),
            ('Show #11', 11),
            ('[Group] Movie [2023][1080p]', None),
            ('', None),
        ]
        for title, expected in cases:
            with self.subTest(title=title):
                self.assertEqual(anime.extract_episode(title), expected)

    def test_parse_rss_items(self):
        items = anime.parse_rss_items(FEED)
        self.assertEqual(len(items), 4)
        self.assertEqual(items[0]['torrent'], 'https://acg.rip/t/13.torrent')
        self.assertIsNone(items[1]['torrent'])
        self.assertEqual(items[0]['pubDate'], 'Fri, 05 Jan 2024 12:00:00 +0800')

    def test_invalid_feed(self):
        with self.assertRaises(anime.AnimeCheckError):
            anime.parse_rss_items('<rss><channel>')

    def test_find_new_episodes_filters_and_orders(self):
        items = anime.parse_rss_items(FEED)
        episodes = anime.find_new_episodes(items, 'lilith-raws] frieren', 11)
        self.assertEqual([e['episode'] for e in episodes], [12, 13])
        self.assertEqual(episodes[0]['link'], 'https://acg.rip/t/12')
        self.assertEqual(anime.find_new_episodes(items, 'Frieren', 13), [])

    def test_build_feed_url(self):
        self.assertEqual(anime.build_feed_url('mikan', '葬送 1080'),
                         'https://mikanani.me/RSS/Search?searchstr=%E8%91%AC%E9%80%81%201080')
        with self.assertRaises(anime.AnimeCheckError):
            anime.build_feed_url('nyaa', 'x')

    @patch('moontv.anime.requests.get', side_effect=requests.ConnectionError('offline'))
    def test_fetch_failure_is_wrapped(self, _mock_get):
        with self.assertRaises(anime.AnimeCheckError):
            anime.fetch_feed_items('acgrip', 'Frieren')

    @patch('moontv.anime.requests.get')
    def test_fetch_parses_feed(self, mock_get):
        response = MagicMock()
        response.text = FEED
        mock_get.return_value = response
        items = anime.fetch_feed_items('dmhy', 'Frieren', timeout=3)
        self.assertEqual(len(items), 4)
        self.assertEqual(mock_get.call_args.kwargs['timeout'], 3)


def _subscription(**overrides):
    subscription = {
        'id': 'sub-1',
        'title': 'Frieren',
        'filterText': 'Lilith-Raws] Frieren',
        'source': 'acgrip',
        'enabled': True,
        'lastCheckTime': 0,
        'lastEpisode': 11,
        'createdBy': 'mod',
    }
    subscription.update(overrides)
    return subscription


class SubscriptionCheckTests(unittest.TestCase):
    def setUp(self):
        isolate_settings(self)
        self.app, self.storage = start_sql_app(self)
        self.storage.create_user('mod', 'pw', role='admin')
        fetch_patch = patch('moontv.anime.fetch_feed_items', return_value=anime.parse_rss_items(FEED))
        self.fetch = fetch_patch.start()
        self.addCleanup(fetch_patch.stop)

    def test_check_notifies_creator_per_episode(self):
        subscription = _subscription()
        result = anime.check_subscription(subscription, timeout=5)
        self.assertEqual(result['lastEpisode'], 13)
        self.assertEqual(subscription['lastEpisode'], 13)
        self.assertGreater(subscription['lastCheckTime'], 0)

        notes = self.storage.get_notifications('mod')
        self.assertEqual(len(notes), 2)
        self.assertTrue(all(n['type'] == 'system' for n in notes))
        self.assertEqual(sorted(n['metadata']['episode'] for n in notes), [12, 13])

    def test_check_without_new_episodes(self):
        subscription = _subscription(lastEpisode=20)
        result = anime.check_subscription(subscription, timeout=5)
        self.assertEqual(result, {'newEpisodes': [], 'lastEpisode': 20})
        self.assertEqual(self.storage.get_notifications('mod'), [])

    def test_unknown_creator_is_not_notified(self):
        anime.check_subscription(_subscription(createdBy='ghost'), timeout=5)
        self.assertEqual(self.storage.get_unread_notification_count('ghost'), 0)

    def _save(self, enabled, subscriptions):
        config = load_admin_config()
        config['AnimeSubscriptionConfig'] = {'Enabled': enabled, 'Subscriptions': subscriptions}
        save_admin_config(config)

    def test_run_checks_only_due_enabled_subscriptions(self):
        recent = anime.now_ms()
        self._save(True, [
            _subscription(),
            _subscription(id='sub-2', enabled=False),
            _subscription(id='sub-3', lastCheckTime=recent),
        ])
        self.assertEqual(anime.run_subscription_checks(), 1)
        saved = load_admin_config()['AnimeSubscriptionConfig']['Subscriptions']
        self.assertEqual([s['lastEpisode'] for s in saved], [13, 11, 11])

    def test_run_checks_skipped_when_disabled(self):
        self._save(False, [_subscription()])
        self.assertEqual(anime.run_subscription_checks(), 0)
        self.fetch.assert_not_called()

    def test_failing_subscription_does_not_stop_others(self):
        self.fetch.side_effect = [anime.AnimeCheckError('boom'), anime.parse_rss_items(FEED)]
        self._save(True, [_subscription(), _subscription(id='sub-2')])
        self.assertEqual(anime.run_subscription_checks(), 1)
        saved = load_admin_config()['AnimeSubscriptionConfig']['Subscriptions']
        self.assertEqual([s['lastEpisode'] for s in saved], [11, 13])

    def test_overlapping_runs_are_skipped(self):
        self._save(True, [_subscription()])
        with anime.check_lock:
            self.assertEqual(anime.run_subscription_checks(), 0)
        self.fetch.assert_not_called()

    def test_config_edits_during_run_are_kept(self):
        self._save(True, [_subscription()])

        def edit_then_fetch(source, filter_text, timeout=15):
            config = load_admin_config()
            config['SiteConfig']['SiteName'] = 'Renamed'
            config['AnimeSubscriptionConfig']['Subscriptions'].append(
                _subscription(id='added-by-admin', enabled=False))
            save_admin_config(config)
            return anime.parse_rss_items(FEED)
        self.fetch.side_effect = edit_then_fetch

        self.assertEqual(anime.run_subscription_checks(), 1)
        config = load_admin_config()
        self.assertEqual(config['SiteConfig']['SiteName'], 'Renamed')
        saved = {s['id']: s for s in config['AnimeSubscriptionConfig']['Subscriptions']}
        self.assertEqual(sorted(saved), ['added-by-admin', 'sub-1'])
        self.assertEqual(saved['sub-1']['lastEpisode'], 13)
        self.assertGreater(saved['sub-1']['lastCheckTime'], 0)
        self.assertEqual(saved['added-by-admin']['lastEpisode'], 11)

    def test_subscription_deleted_during_run_stays_deleted(self):
        self._save(True, [_subscription()])

        def delete_then_fetch(source, filter_text, timeout=15):
            config = load_admin_config()
            config['AnimeSubscriptionConfig']['Subscriptions'] = []
            save_admin_config(config)
            return anime.parse_rss_items(FEED)
        self.fetch.side_effect = delete_then_fetch

        self.assertEqual(anime.run_subscription_checks(), 1)
        self.assertEqual(load_admin_config()['AnimeSubscriptionConfig']['Subscriptions'], [])

    def test_record_check_progress_only_touches_progress_fields(self):
        self._save(True, [_subscription(), _subscription(id='sub-2', title='Other')])
        anime.record_check_progress({'sub-2': _subscription(id='sub-2', title='Stale', lastEpisode=4, lastCheckTime=99)})
        saved = load_admin_config()['AnimeSubscriptionConfig']['Subscriptions']
        self.assertEqual([(s['title'], s['lastEpisode'], s['lastCheckTime']) for s in saved],
                         [('Frieren', 11, 0), ('Other', 4, 99)])


if __name__ == '__main__':
    unittest.main()
