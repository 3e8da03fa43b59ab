from django.apps import AppConfig, apps


class PayflixConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'payflix'
    services = None

    def ready(self):
        from payflix.services import build_services

        self.services = build_services()


def get_services():
    return apps.get_app_config('payflix').services
