"""Validation utilities for incoming request payloads."""
from typing import Any, Dict, List, Optional

from secure_attendance.utils.errors import ValidationError
from secure_attendance.utils.helpers import parse_timestamp


class Validator:
    """Validation helper class."""

    @staticmethod
    def validate_required_fields(data: Dict, required_fields: List[str]) -> Dict[str, Any]:
        """Validate required fields in data."""
        errors = []

        for field in required_fields:
            if field not in data or data[field] is None or data[field] == '':
                errors.append(f"{field} is required")

        return {
            "is_valid": len(errors) == 0,
            "errors": errors
        }

    @staticmethod
    def validate_coordinates(latitude: Any, longitude: Any) -> Dict[str, Any]:
        """Validate a latitude/longitude pair."""
        errors = []

        try:
            lat = float(latitude)
            lng = float(longitude)
        except (TypeError, ValueError):
            return {"is_valid": False, "errors": ["Coordinates must be numeric"]}

        if lat != lat or lng != lng:  # NaN
            errors.append("Coordinates must be numeric")
        elif not -90.0 <= lat <= 90.0:
            errors.append("Latitude must be between -90 and 90")
        elif not -180.0 <= lng <= 180.0:
            errors.append("Longitude must be between -180 and 180")

        return {
            "is_valid": len(errors) == 0,
            "errors": errors
        }

    @staticmethod
    def require(data: Optional[Dict], required_fields: List[str]) -> Dict:
        """Raise ``ValidationError`` unless every required field is present."""
        if not isinstance(data, dict):
            raise ValidationError("JSON body is required")

        result = Validator.validate_required_fields(data, required_fields)
        if not result['is_valid']:
            raise ValidationError(result['errors'][0], result['errors'])
        return data

    @staticmethod
    def timestamp(value: Any, field: str):
        """Parse a timestamp field or raise ``ValidationError``."""
        try:
            parsed = parse_timestamp(value)
        except (TypeError, ValueError, OverflowError, OSError):
            raise ValidationError(f"{field} must be an ISO-8601 timestamp")
        if parsed is None:
            raise ValidationError(f"{field} is required")
        return parsed

    @staticmethod
    def location(data: Any) -> Optional[Dict[str, float]]:
        """Validate an optional reported location object."""
        if data is None:
            return None
        if not isinstance(data, dict):
            raise ValidationError("location must be an object")

        result = Validator.validate_coordinates(data.get('latitude'), data.get('longitude'))
        if not result['is_valid']:
            raise ValidationError(result['errors'][0], result['errors'])

        accuracy = data.get('accuracy')
        if accuracy is not None:
            try:
                accuracy = float(accuracy)
            except (TypeError, ValueError):
                raise ValidationError("location.accuracy must be numeric")
            if accuracy < 0:
                raise ValidationError("location.accuracy cannot be negative")

        return {
            'latitude': float(data['latitude']),
            'longitude': float(data['longitude']),
            'accuracy': accuracy
        }
