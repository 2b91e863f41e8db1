import json

from django.core.management.base import BaseCommand, CommandError

from catalog_sync.services import get_sync_service


class Command(BaseCommand):
    help = 'Control supplier catalog syncs. Every subcommand prints a JSON document.'

    def add_arguments(self, parser):
        actions = parser.add_subparsers(dest='action', required=True)

        start = actions.add_parser('start', help='Run a sync for one supplier.')
        start.add_argument('supplier_code')
        start.add_argument('--triggered-by', default='manual')
        start.add_argument('--background', action='store_true',
                           help='Return once the session is open instead of waiting for it.')

        stop = actions.add_parser('stop', help="Request a stop of the supplier's running sync.")
        stop.add_argument('supplier_code')

        actions.add_parser('active', help='List running sessions.')

        status = actions.add_parser('status', help='Latest session of a supplier, or one session by id.')
        status.add_argument('supplier_code', nargs='?')
        status.add_argument('--session')

        history = actions.add_parser('history', help='Session history of a supplier, or an overall summary.')
        history.add_argument('supplier_code', nargs='?')
        history.add_argument('--limit', type=int, default=20)
        history.add_argument('--days', type=int, default=7)

        verify = actions.add_parser('verify', help='Compare all stores for the keys a session touched.')
        verify.add_argument('session_id')

        actions.add_parser('health', help='Pipeline health per supplier.')
        actions.add_parser('test-connection', help='Check that the supplier feed is reachable.')
        actions.add_parser('import-categories', help='Load the category file into the database.')

        export = actions.add_parser('export', help='Dump the stored products of a supplier.')
        export.add_argument('supplier_code')

        refresh = actions.add_parser('refresh-variant', help='Re-sync a single variant by SKU.')
        refresh.add_argument('sku')

    def handle(self, *args, **options):
        service = get_sync_service()
        action = options['action']

        if action == 'start':
            result = service.start_sync(
                options['supplier_code'], triggered_by=options['triggered_by'], background=options['background'],
            )
        elif action == 'stop':
            result = service.stop_sync(options['supplier_code'])
        elif action == 'active':
            result = service.active_syncs()
        elif action == 'status':
            if options['session']:
                result = service.session_status(options['session'])
            elif options['supplier_code']:
                result = service.sync_status(options['supplier_code'])
            else:
                raise CommandError('status needs a supplier code or --session.')
        elif action == 'history':
            result = service.history(options['supplier_code'], limit=options['limit'], days=options['days'])
        elif action == 'verify':
            result = service.verify(options['session_id'])
        elif action == 'health':
            result = service.health()
        elif action == 'test-connection':
            result = service.test_connection()
        elif action == 'import-categories':
            result = service.import_categories()
        elif action == 'export':
            result = service.export_products(options['supplier_code'])
        elif action == 'refresh-variant':
            result = service.refresh_variant(options['sku'])
        else:
            raise CommandError(f'Unknown action {action!r}.')

        self.stdout.write(json.dumps(result, indent=2, ensure_ascii=False, default=str))
        if not result.get('success', False):
            raise CommandError(result.get('error') or f'{action} did not succeed.')
