from typing import Optional

from pydantic import AliasChoices, BaseModel, Field


class NoteContent(BaseModel):
    soap_subjective: Optional[str] = Field(None, validation_alias=AliasChoices("soap_subjective", "soapSubjective"))
    soap_objective: Optional[str] = Field(None, validation_alias=AliasChoices("soap_objective", "soapObjective"))
    soap_assessment: Optional[str] = Field(None, validation_alias=AliasChoices("soap_assessment", "soapAssessment"))
    soap_plan: Optional[str] = Field(None, validation_alias=AliasChoices("soap_plan", "soapPlan"))
    content_encrypted: Optional[str] = Field(None, validation_alias=AliasChoices("content_encrypted", "contentEncrypted"))


class DigitalSignatureRequest(BaseModel):
    note_id: str = Field(validation_alias=AliasChoices("note_id", "noteId"))
    action: str


class AccessControlRequest(BaseModel):
    action: str
    resource: str
    resource_id: Optional[str] = Field(None, validation_alias=AliasChoices("resource_id", "resourceId"))
    patient_id: Optional[str] = Field(None, validation_alias=AliasChoices("patient_id", "patientId"))


class CreateNoteRequest(NoteContent):
    encounter_id: str = Field(validation_alias=AliasChoices("encounter_id", "encounterId"))
    note_type: str = Field("progress_note", validation_alias=AliasChoices("note_type", "noteType"))


class UpdateNoteRequest(NoteContent):
    note_type: Optional[str] = Field(None, validation_alias=AliasChoices("note_type", "noteType"))


class AmendmentRequest(NoteContent):
    amendment_reason: str = Field(
        validation_alias=AliasChoices("amendment_reason", "amendmentReason", "reason")
    )


class BreakGlassRequest(BaseModel):
    patient_id: str = Field(validation_alias=AliasChoices("patient_id", "patientId"))
    access_reason: str = Field(validation_alias=AliasChoices("access_reason", "accessReason", "reason"))
    justification: str = ""


class BreakGlassReviewRequest(BaseModel):
    review_notes: str = Field("", validation_alias=AliasChoices("review_notes", "reviewNotes", "notes"))
