"""ID Generation Utilities"""
import uuid
from datetime import datetime, timezone
from typing import Optional


def generate_id(prefix: Optional[str] = None) -> str:
    """
    Generate a unique ID with optional prefix
    
    Args:
        prefix: Optional prefix for the ID (e.g., 'WFI', 'WFA')
        
    Returns:
        Unique ID string
        
    Examples:
        >>> generate_id('WFI')
        'WFI-a1b2c3d4e5f6'
        >>> generate_id()
        'a1b2c3d4e5f6'
    """
    unique_part = uuid.uuid4().hex[:12]
    
    if prefix:
        return f"{prefix}-{unique_part}"
    return unique_part


def generate_definition_id() -> str:
    """Generate workflow definition ID"""
    return generate_id("WFD")


def generate_instance_id() -> str:
    """Generate workflow instance ID"""
    return generate_id("WFI")


def generate_history_id() -> str:
    """Generate workflow history record ID"""
    return generate_id("WFH")


def generate_approval_id() -> str:
    """Generate workflow approval ID"""
    return generate_id("WFA")


def generate_notification_id() -> str:
    """Generate notification ID"""
    return generate_id("NTF")


def generate_correlation_id() -> str:
    """
    Generate a correlation ID for request tracing
    
    Returns:
        Correlation ID string with timestamp prefix
    """
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    unique_part = uuid.uuid4().hex[:8]
    return f"COR-{timestamp}-{unique_part}"
