"""
Pydantic schemas for the meetings API - runtime validation at the boundary.

Field aliases are the upstream's camelCase names so validation issues point at
the same paths an operator sees in the raw payload. Code downstream uses the
snake_case attribute names.

Numeric and text fields use strict types: coercion of numbers-as-strings is
done explicitly by the normalizer, so anything still a string here is drift.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr


class RawSpeechRecord(BaseModel):
    """One utterance within a meeting"""
    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True)

    speech_id: StrictStr = Field(alias="speechID")
    speech_order: StrictInt = Field(alias="speechOrder")
    speaker: StrictStr
    speaker_yomi: Optional[StrictStr] = Field(default=None, alias="speakerYomi")
    speaker_group: Optional[StrictStr] = Field(default=None, alias="speakerGroup")
    speaker_position: Optional[StrictStr] = Field(default=None, alias="speakerPosition")
    speaker_role: Optional[StrictStr] = Field(default=None, alias="speakerRole")
    speech: StrictStr
    start_page: Optional[StrictInt] = Field(default=None, alias="startPage")
    create_time: StrictStr = Field(alias="createTime")
    update_time: StrictStr = Field(alias="updateTime")
    speech_url: Optional[StrictStr] = Field(default=None, alias="speechURL")

    def speaker_metadata(self) -> Dict[str, Any]:
        """Speaker attribution for the attached-assets payload"""
        return {
            "speechID": self.speech_id,
            "speaker": self.speaker,
            "speakerYomi": self.speaker_yomi,
            "speakerGroup": self.speaker_group,
            "speakerPosition": self.speaker_position,
            "speakerRole": self.speaker_role,
        }


class RawMeetingRecord(BaseModel):
    """One meeting session with its ordered speeches"""
    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True)

    issue_id: StrictStr = Field(alias="issueID")
    image_kind: StrictStr = Field(alias="imageKind")
    search_object: StrictInt = Field(alias="searchObject")
    session: StrictInt
    name_of_house: StrictStr = Field(alias="nameOfHouse")
    name_of_meeting: StrictStr = Field(alias="nameOfMeeting")
    issue: StrictStr
    date: StrictStr
    closing: Optional[StrictStr] = None
    speech_record: List[RawSpeechRecord] = Field(default_factory=list, alias="speechRecord")
    meeting_url: Optional[StrictStr] = Field(default=None, alias="meetingURL")
    pdf_url: Optional[StrictStr] = Field(default=None, alias="pdfURL")


class RawMeetingData(BaseModel):
    """One page of results from the meetings API"""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    number_of_records: StrictInt = Field(alias="numberOfRecords")
    number_of_return: StrictInt = Field(default=0, alias="numberOfReturn")
    start_record: StrictInt = Field(default=1, alias="startRecord")
    next_record_position: Optional[StrictInt] = Field(default=None, alias="nextRecordPosition")
    meeting_record: List[RawMeetingRecord] = Field(default_factory=list, alias="meetingRecord")
