from typing import Optional, Dict, Any, List
import os
import logging
from dotenv import load_dotenv
from rich.console import Console
from rich.prompt import Prompt
import keyring

logger = logging.getLogger(__name__)

console = Console()

KEYRING_SERVICE = 'cassius-sync'


class ConfigManager:
    """Manage application configuration and environment variables"""

    def __init__(self, env_file: str = None):
        """Initialize config manager"""
        if env_file:
            self.env_file = env_file
        else:
            # Project root is two levels up from this file
            project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
            self.env_file = os.path.join(project_root, '.env')
            logger.debug(f"Looking for .env file at: {self.env_file}")

        self.config = {}
        self.load_config()

    def load_config(self):
        """Load configuration from environment and .env file"""
        if os.path.exists(self.env_file):
            logger.info(f"Loading environment variables from {self.env_file}")
            load_dotenv(self.env_file, override=True)

        self.config['app'] = self._load_app_config()
        self.config['google'] = self._load_google_config()
        self.config['sync'] = self._load_sync_config()
        self.config['import'] = self._load_import_config()
        self.config['development'] = self._load_dev_config()

    def _load_app_config(self) -> Dict[str, Any]:
        """Load application settings"""
        database_path = self._expand_path(os.getenv('DATABASE_PATH', '~/.cassius/cassius.db'))
        return {
            'timezone': os.getenv('TIMEZONE', 'Europe/Paris'),
            'base_url': os.getenv('APP_BASE_URL', 'http://localhost:5000').rstrip('/'),
            'settings_path': os.getenv('GOOGLE_SETTINGS_PATH', '/settings/integrations/google-calendar'),
            'database_path': database_path,
            'database_url': os.getenv('DATABASE_URL') or f'sqlite:///{database_path}'
        }

    def _load_google_config(self) -> Dict[str, Any]:
        """Load Google OAuth and calendar settings"""
        return {
            'client_id': os.getenv('GOOGLE_CLIENT_ID') or self._get_secret('google_client_id'),
            'client_secret': os.getenv('GOOGLE_CLIENT_SECRET') or self._get_secret('google_client_secret'),
            'redirect_uri': os.getenv('GOOGLE_REDIRECT_URI'),
            'state_secret': os.getenv('SESSION_SECRET') or self._get_secret('session_secret'),
            'request_timeout': float(os.getenv('GOOGLE_REQUEST_TIMEOUT', 20)),
            'event_marker': os.getenv('CALENDAR_EVENT_MARKER', '[Cassius]')
        }

    def _load_sync_config(self) -> Dict[str, Any]:
        """Load sync and retry settings"""
        return {
            'max_retries': int(os.getenv('SYNC_MAX_RETRIES', 3)),
            'backoff_base': float(os.getenv('SYNC_BACKOFF_BASE', 1.0)),
            'match_window_minutes': int(os.getenv('SYNC_MATCH_WINDOW_MINUTES', 15))
        }

    def _load_import_config(self) -> Dict[str, Any]:
        return {
            'sample_limit': int(os.getenv('IMPORT_SAMPLE_LIMIT', 20))
        }

    def _load_dev_config(self) -> Dict[str, Any]:
        """Load development settings"""
        return {
            'debug': self._parse_bool(os.getenv('DEBUG', 'false')),
            'log_level': os.getenv('LOG_LEVEL', 'INFO').upper()
        }

    def _expand_path(self, path: str) -> str:
        """Expand user and environment variables in path"""
        if not path:
            return path
        return os.path.expandvars(os.path.expanduser(path))

    def _parse_bool(self, value: str) -> bool:
        """Parse string boolean value"""
        return str(value).lower() in ('true', '1', 'yes', 'on')

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by dotted key, e.g. 'google.client_id'"""
        parts = key.split('.')
        value = self.config
        for part in parts:
            if isinstance(value, dict):
                value = value.get(part)
            else:
                return default
        return value if value is not None else default

    def set(self, key: str, value: Any):
        section, _, name = key.partition('.')
        self.config.setdefault(section, {})[name] = value

    def missing_google_settings(self) -> List[str]:
        required = {
            'google.client_id': 'GOOGLE_CLIENT_ID',
            'google.client_secret': 'GOOGLE_CLIENT_SECRET',
            'google.redirect_uri': 'GOOGLE_REDIRECT_URI',
            'google.state_secret': 'SESSION_SECRET'
        }
        return [env_name for key, env_name in required.items() if not self.get(key)]

    def is_google_configured(self) -> bool:
        return not self.missing_google_settings()

    def validate(self) -> bool:
        """Validate required configuration"""
        missing = self.missing_google_settings()
        if missing:
            console.print("[bold red]Missing Required Configuration:[/bold red]")
            for name in missing:
                console.print(f"- {name}")
            return False
        return True

    def setup_wizard(self):
        """Interactive setup wizard for the Google OAuth client"""
        console.print("[bold blue]Cassius Sync Setup Wizard[/bold blue]")
        console.print("This wizard stores your Google OAuth client in the system keyring.\n")

        console.print("\n[bold cyan]Google Calendar Configuration[/bold cyan]")
        client_id = Prompt.ask("Enter your Google Client ID")
        client_secret = Prompt.ask("Enter your Google Client Secret", password=True)
        session_secret = Prompt.ask("Enter a secret used to sign OAuth state", password=True)
        self._save_secret('google_client_id', client_id)
        self._save_secret('google_client_secret', client_secret)
        self._save_secret('session_secret', session_secret)

        self.load_config()

        console.print("\n[bold green]Setup complete! Secrets have been saved.[/bold green]")

    def _save_secret(self, key: str, value: str):
        """Save secret to system keyring"""
        if value:
            keyring.set_password(KEYRING_SERVICE, key, value)

    def _get_secret(self, key: str) -> Optional[str]:
        """Get secret from system keyring"""
        try:
            return keyring.get_password(KEYRING_SERVICE, key)
        except Exception as e:
            logger.debug(f"Keyring lookup for {key} failed: {e}")
            return None

    def ensure_directories(self):
        """Ensure the SQLite database directory exists"""
        if self.get('app.database_url', '').startswith('sqlite:///'):
            path = os.path.dirname(self.get('app.database_path'))
            if path:
                os.makedirs(path, exist_ok=True)


def configure_logging(config: ConfigManager):
    logging.basicConfig(
        level=getattr(logging, config.get('development.log_level', 'INFO'), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )
