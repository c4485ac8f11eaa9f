from cassius_sync.config.manager import ConfigManager, configure_logging

__all__ = ['ConfigManager', 'configure_logging']
