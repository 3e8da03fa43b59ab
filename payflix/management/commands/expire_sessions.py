import time

from django.conf import settings
from django.core.management.base import BaseCommand
from loguru import logger

from payflix.apps import get_services


class Command(BaseCommand):
    help = 'Mark active spending sessions past their expiry as expired.'

    def add_arguments(self, parser):
        parser.add_argument('--loop', action='store_true',
                            help='Keep sweeping until interrupted.')
        parser.add_argument('--interval', type=int,
                            default=settings.PAYFLIX_SWEEP_INTERVAL_SECONDS,
                            help='Seconds between sweeps with --loop.')

    def handle(self, *args, **options):
        ledger = get_services().ledger
        while True:
            count = ledger.expire_stale_sessions()
            self.stdout.write(f'Expired {count} session(s)')
            if not options['loop']:
                return
            logger.debug('Next session sweep in {}s', options['interval'])
            time.sleep(options['interval'])
