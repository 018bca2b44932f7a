from pipeline_crm.crm.models import (
	CRMCustomField,
	CRMDeal,
	CRMDealFieldValue,
	CRMPipeline,
	CRMProfile,
	CRMStage,
	CRMUserRole,
)

__all__ = [
	"CRMCustomField",
	"CRMDeal",
	"CRMDealFieldValue",
	"CRMPipeline",
	"CRMProfile",
	"CRMStage",
	"CRMUserRole",
]
