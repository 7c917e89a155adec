from __future__ import annotations

from pydantic import BaseModel, Field, field_validator


class AppInfoResponse(BaseModel):
    title: str
    description: str
    supportedCollections: list[str]
    fieldLabels: list[str]


class ProductBlockResponse(BaseModel):
    productGid: str
    collectionHandle: str | None = None
    supported: bool
    editPath: str | None = None
    bannerTitle: str | None = None
    bannerMessage: str | None = None


class VariantField(BaseModel):
    label: str
    key: str
    choices: list[str] = Field(default_factory=list)
    value: str | None = None


class CollectionSchemaResponse(BaseModel):
    collectionHandle: str
    supported: bool
    fields: list[VariantField] = Field(default_factory=list)
    message: str | None = None


class ProductVariantResponse(BaseModel):
    productGid: str
    title: str | None = None
    collectionHandle: str | None = None
    collectionGid: str | None = None
    supported: bool
    fields: list[VariantField] = Field(default_factory=list)
    message: str | None = None


class SaveVariantRequest(BaseModel):
    values: dict[str, str] = Field(default_factory=dict)

    @field_validator("values")
    @classmethod
    def strip_values(cls, value: dict[str, str]) -> dict[str, str]:
        return {label: item.strip() for label, item in value.items()}


class SaveVariantResponse(BaseModel):
    productGid: str
    status: str
    messages: list[str]
    missingFields: list[str] = Field(default_factory=list)
    values: dict[str, str] = Field(default_factory=dict)


class DescriptionField(BaseModel):
    key: str
    value: str = ""


class DescriptionGroup(BaseModel):
    groupName: str
    fields: list[DescriptionField] = Field(default_factory=list)


class ProductDescriptionResponse(BaseModel):
    productGid: str
    groups: list[DescriptionGroup]


class UpdateProductDescriptionRequest(BaseModel):
    groups: list[DescriptionGroup]


class UpdateProductDescriptionResponse(BaseModel):
    productGid: str
    message: str
