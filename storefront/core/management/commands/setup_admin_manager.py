from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand, CommandError

from storefront.core.exceptions import StorefrontError
from storefront.core.services import setup_admin_manager

User = get_user_model()


class Command(BaseCommand):
    help = 'Make an account the admin manager (role manager with the admin flag set)'

    def add_arguments(self, parser):
        parser.add_argument('user_id', nargs='?', type=int, help='Primary key of the account')
        parser.add_argument('--email', help='Look the account up by email instead of id')
        parser.add_argument(
            '--force',
            action='store_true',
            help='Proceed even when another account already holds the admin flag',
        )

    def handle(self, *args, **options):
        user_id = options.get('user_id')
        email = options.get('email')

        if user_id is None and not email:
            raise CommandError('Pass a user id or --email')

        if user_id is None:
            user = User.objects.filter(email__iexact=email.strip()).first()
            if user is None:
                raise CommandError(f'No account with email {email}')
            user_id = user.pk

        try:
            profile = setup_admin_manager(user_id, force=options['force'])
        except StorefrontError as e:
            admins = e.details.get('admin_user_ids')
            if admins:
                self.stdout.write(self.style.WARNING(f'  Current admin account ids: {admins}'))
                self.stdout.write('  Re-run with --force to add another admin anyway')
            raise CommandError(e.message)

        self.stdout.write(self.style.SUCCESS(
            f'✓ {profile.user.email or profile.user.username} is now the admin manager'
        ))
