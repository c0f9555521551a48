from rest_framework import serializers

from .models import Operation, OperationHistory, OperationStatus, OperationType

SERIAL_PREFIX = "FHTT"
REQUIRED = "This field is required."


class OperationSerializer(serializers.ModelSerializer):
    """Active operation row as held in the mirror"""

    class Meta:
        model = Operation
        fields = [
            "id",
            "type",
            "data",
            "status",
            "technician",
            "technician_id",
            "operator",
            "operator_id",
            "assigned_operator",
            "assigned_at",
            "feedback",
            "technician_response",
            "completed_by",
            "completed_at",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class HistoryRecordSerializer(serializers.ModelSerializer):
    class Meta:
        model = OperationHistory
        fields = [
            "id",
            "operation_id",
            "type",
            "data",
            "final_status",
            "technician",
            "technician_id",
            "operator",
            "feedback",
            "technician_response",
            "created_at",
            "completed_at",
        ]
        read_only_fields = fields


def _check_serial(value, field_name, errors):
    if value and not str(value).startswith(SERIAL_PREFIX):
        errors[field_name] = f"Serial must start with {SERIAL_PREFIX}."


def validate_installation(data) -> dict:
    errors = {}

    for field_name in ("cidade", "modelo", "plano", "tipoServico", "servico", "cliente"):
        if not data.get(field_name):
            errors[field_name] = REQUIRED

    if not data.get("serial"):
        errors["serial"] = REQUIRED
    else:
        _check_serial(data["serial"], "serial", errors)

    # wifi and senha come as a pair
    wifi = data.get("wifi")
    if wifi:
        if len(str(wifi)) > 23:
            errors["wifi"] = "Wi-Fi name must be at most 23 characters."
        senha = data.get("senha")
        if not senha:
            errors["senha"] = REQUIRED
        elif len(str(senha)) < 8:
            errors["senha"] = "Password must be at least 8 characters."

    return errors


def validate_cto(data) -> dict:
    return {field_name: REQUIRED for field_name in ("tipoSplitter", "bairro", "rua") if not data.get(field_name)}


def validate_rma(data) -> dict:
    errors = {}
    _check_serial(data.get("serialONU"), "serialONU", errors)
    _check_serial(data.get("serial"), "serial", errors)
    return errors


FORM_VALIDATORS = {
    OperationType.INSTALLATION: validate_installation,
    OperationType.CTO: validate_cto,
    OperationType.RMA: validate_rma,
}


class CreateOperationSerializer(serializers.Serializer):
    """
    Technician form submission
    data is an open mapping: fields beyond the checked ones are kept verbatim
    """

    type = serializers.ChoiceField(choices=OperationType.choices)
    data = serializers.DictField()

    def validate(self, attrs):
        errors = FORM_VALIDATORS[attrs["type"]](attrs["data"])
        if errors:
            raise serializers.ValidationError({"data": errors})
        return attrs


class AssignSerializer(serializers.Serializer):
    """Optional override; defaults to the requesting operator"""

    operator_name = serializers.CharField(required=False, max_length=255)


class StatusUpdateSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=OperationStatus.choices)
    operator_name = serializers.CharField(required=False, max_length=255)


class MessageSerializer(serializers.Serializer):
    # blank text is rejected by the lifecycle manager with its own message
    text = serializers.CharField(allow_blank=True, trim_whitespace=False)


class FinishSerializer(serializers.Serializer):
    operator_name = serializers.CharField(required=False, max_length=255)


class QueuePositionSerializer(serializers.Serializer):
    id = serializers.CharField()
    position = serializers.IntegerField()
    estimated_wait_minutes = serializers.IntegerField()
