from fastapi import APIRouter, HTTPException, status

from querygate.core import schemas
from querygate.core.config import settings
from querygate.core.exceptions import ParseError
from querygate.core.governance import rules, validator

router = APIRouter(prefix="/rules", tags=["Business Rules"])


@router.post("/parse", response_model=schemas.RuleSet)
async def parse_rules(payload: schemas.ParseRulesRequest):
    """Show how a rules document will be understood before it is saved."""
    try:
        return rules.parse(payload.text, max_bytes=settings.RULES_MAX_BYTES)
    except ParseError as error:
        raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, str(error))


@router.post("/validate", response_model=schemas.Verdict)
async def validate_query(payload: schemas.ValidateQueryRequest):
    """Dry run: check a query against a rules document without executing it."""
    try:
        rule_set = rules.parse(payload.rules_text, max_bytes=settings.RULES_MAX_BYTES)
    except ParseError as error:
        raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, str(error))
    return validator.validate(payload.query, rule_set)
