from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

from auditsync.domain.events import Classification, Severity


# Severity policy for new entries: destructive or irreversible operations (delete,
# permanent removal, key rotation, encryption toggling) are critical; data export,
# sharing, credential and schedule changes are warning; everything else is info.
# Each operation name belongs to exactly one category.

_REPORTS: dict[str, Severity] = {
    "ViewReport": "info",
    "EditReport": "info",
    "CreateReport": "info",
    "DeleteReport": "critical",
    "CopyReport": "info",
    "RenameReport": "info",
    "ExportReport": "warning",
    "ExportArtifact": "warning",
    "ExportArtifactDownload": "warning",
    "DownloadReport": "warning",
    "PrintReport": "info",
    "ShareReport": "warning",
    "RebindReport": "warning",
    "UpdateReportContent": "info",
    "EditReportDescription": "info",
    "EditReportProperties": "info",
    "ImportArtifactStart": "info",
    "ImportArtifactEnd": "info",
    "Import": "info",
    "CreateReportFromLakehouse": "info",
    "GenerateScreenshot": "info",
    "ViewUsageMetrics": "info",
    "CreateBookmark": "info",
    "DeleteBookmark": "info",
    "SaveAutogeneratedReport": "info",
    "ExportReportToFile": "warning",
    "AnalyzedByExternalApplication": "info",
}

_DASHBOARDS: dict[str, Severity] = {
    "ViewDashboard": "info",
    "CreateDashboard": "info",
    "EditDashboard": "info",
    "DeleteDashboard": "critical",
    "CopyDashboard": "info",
    "RenameDashboard": "info",
    "ShareDashboard": "warning",
    "PrintDashboard": "info",
    "AddTile": "info",
    "EditTile": "info",
    "DeleteTile": "warning",
    "CloneTile": "info",
    "PinTile": "info",
    "ExportTile": "warning",
    "ViewTile": "info",
    "PinReportToTabs": "info",
    "SetDashboardAlert": "info",
    "DeleteDashboardAlert": "info",
}

_DATASETS: dict[str, Severity] = {
    "CreateDataset": "info",
    "EditDataset": "info",
    "DeleteDataset": "critical",
    "RefreshDataset": "info",
    "CancelDatasetRefresh": "warning",
    "ShareDataset": "warning",
    "TakeOverDataset": "critical",
    "SetScheduledRefresh": "warning",
    "SetAllConnections": "warning",
    "BindToGateway": "warning",
    "GetDatasources": "info",
    "AnalyzeInExcel": "info",
    "UpdateDatasetParameters": "warning",
    "EditDatasetProperties": "warning",
    "DeleteDatasetRows": "critical",
    "PostDatasetRows": "info",
    "ApplyChangeToPowerBIModel": "warning",
    "ConnectFromExternalApplication": "info",
    "GetRefreshHistory": "info",
    "UpdateDatasources": "warning",
    "CreateDirectLakeSemanticModel": "info",
    "ExecuteQueries": "info",
    "DiscoverSuggestedDatasets": "info",
    "EditDatasetEndorsement": "warning",
}

_DATAFLOWS: dict[str, Severity] = {
    "CreateDataflow": "info",
    "UpdateDataflow": "info",
    "DeleteDataflow": "critical",
    "ViewDataflow": "info",
    "RequestDataflowRefresh": "info",
    "CancelDataflowRefresh": "warning",
    "SetScheduledRefreshOnDataflow": "warning",
    "ExportDataflow": "warning",
    "TookOverDataflow": "critical",
    "EditDataflowProperties": "info",
    "ReceiveDataflowSecretFromKeyVault": "warning",
}

_WORKSPACES: dict[str, Severity] = {
    "CreateWorkspace": "info",
    "UpdateWorkspace": "info",
    "DeleteGroupWorkspace": "critical",
    "RestoreWorkspace": "warning",
    "DeleteWorkspaceViaAdminApi": "critical",
    "DeleteWorkspacesPermanentlyAsAdmin": "critical",
    "MigrateWorkspaceIntoCapacity": "warning",
    "ModifyWorkspaceCapacity": "warning",
    "RemoveWorkspacesFromCapacity": "warning",
    "UpdateWorkspaceAccess": "warning",
    "UpdateFolderAccess": "warning",
    "DeleteFolderAccess": "warning",
    "AddGroupMembers": "warning",
    "DeleteGroupMembers": "critical",
    "CreateGroup": "info",
    "DeleteGroup": "critical",
    "CreateFolder": "info",
    "UpdateFolder": "info",
    "DeleteFolder": "critical",
    "GetGroupsAsAdmin": "info",
    "GetGroupUsersAsAdmin": "info",
    "AddWorkspaceUserAsAdmin": "warning",
    "DeleteWorkspaceUserAsAdmin": "warning",
}

_PIPELINES: dict[str, Severity] = {
    "CreateAlmPipeline": "info",
    "DeleteAlmPipeline": "critical",
    "DeployAlmPipeline": "warning",
    "AssignWorkspaceToAlmPipeline": "warning",
    "UnassignWorkspaceFromAlmPipeline": "warning",
    "UpdateAlmPipelineAccess": "warning",
    "RunArtifact": "info",
    "CancelRunningArtifact": "warning",
    "ScheduleArtifact": "info",
    "CreateArtifact": "info",
    "ReadArtifact": "info",
    "UpdateArtifact": "info",
    "ViewArtifact": "info",
    "DeleteArtifact": "critical",
    "ShareArtifact": "warning",
    "TakeOverArtifact": "critical",
}

_GATEWAYS: dict[str, Severity] = {
    "CreateGateway": "info",
    "UpdateGateway": "warning",
    "DeleteGateway": "critical",
    "AddDatasourceToGateway": "info",
    "RemoveDatasourceFromGateway": "warning",
    "ChangeGatewayAdministrators": "critical",
    "ChangeGatewayDatasourceUsers": "warning",
    "UpdateDatasourceCredentials": "warning",
    "TakeOverDatasource": "critical",
    "CreateCloudDatasource": "info",
    "DeleteCloudDatasource": "critical",
    "UpdateCloudDatasource": "warning",
    "MigrateDatasource": "warning",
}

_APPS: dict[str, Severity] = {
    "CreateApp": "info",
    "UpdateApp": "info",
    "InstallApp": "info",
    "UnpublishApp": "warning",
    "InstallTemplateApp": "info",
    "DeleteTemplateApp": "critical",
    "CreateTemplateApp": "info",
    "UpdateTemplateAppSettings": "info",
    "PromoteTemplateAppPackage": "warning",
    "UpdateAppAccess": "warning",
}

_CAPACITY: dict[str, Severity] = {
    "ChangeCapacityState": "critical",
    "UpdateCapacityUsersAssignment": "critical",
    "UpdateCapacityAdmins": "critical",
    "UpdatedAdminFeatureSwitch": "critical",
    "AddTenantKey": "critical",
    "RotateTenantKey": "critical",
    "ExportActivityEvents": "info",
    "OptInForProTrial": "info",
    "OptInForPPUTrial": "info",
    "UpdateCapacityResourceGovernanceSettings": "warning",
    "UpdateCapacityDisplayName": "info",
    "SetDefaultCapacityForTenant": "warning",
    "GetCapacitiesAsAdmin": "info",
    "GetDatasetsAsAdmin": "info",
    "GetReportsAsAdmin": "info",
    "GetDashboardsAsAdmin": "info",
    "GetDataflowsAsAdmin": "info",
    "GetAppsAsAdmin": "info",
    "GetTenantSettingsAsAdmin": "info",
    "UpdateTenantSettingsAsAdmin": "critical",
}

_SECURITY: dict[str, Severity] = {
    "SensitivityLabelApplied": "warning",
    "SensitivityLabelChanged": "warning",
    "SensitivityLabelRemoved": "critical",
    "DLPRuleMatch": "critical",
    "DLPRuleUndo": "warning",
    "ApplyWorkspaceEncryption": "critical",
    "DisableWorkspaceEncryption": "critical",
    "UpdateOutboundAccessProtection": "warning",
    "SetItemPermissions": "warning",
    "RemoveItemPermissions": "warning",
}

_LAKEHOUSE: dict[str, Severity] = {
    "CreateLakehouseFile": "info",
    "DeleteLakehouseFile": "warning",
    "CreateLakehouseFolder": "info",
    "DeleteLakehouseFolder": "warning",
    "CreateLakehouseTable": "info",
    "DeleteLakehouseTable": "critical",
    "LoadLakehouseTable": "info",
    "RefreshLakehouseData": "info",
    "PreviewLakehouseTable": "info",
    "CreateLakehouseShortcut": "info",
    "DeleteLakehouseShortcut": "warning",
}

_WAREHOUSE: dict[str, Severity] = {
    "CreateWarehouse": "info",
    "DeleteWarehouse": "critical",
    "ViewWarehouse": "info",
    "UpdateWarehouse": "info",
    "UpdateWarehouseSettings": "warning",
    "ShareWarehouse": "warning",
    "CancelWarehouseBatch": "warning",
    "CreateDatamart": "info",
    "UpdateDatamart": "info",
    "DeleteDatamart": "critical",
    "RefreshDatamart": "info",
    "ViewDatamart": "info",
    "ShareDatamart": "warning",
}

_ONELAKE: dict[str, Severity] = {
    "CreateFile": "info",
    "DeleteFile": "warning",
    "ReadFileOrGetBlob": "info",
    "WriteToFileOrPutBlob": "info",
    "CreateDirectory": "info",
    "DeleteDirectory": "warning",
    "RenameFileOrDirectory": "info",
    "CreateContainer": "info",
    "DeleteContainer": "critical",
    "GetBlobProperties": "info",
    "ListFilePath": "info",
}

_GIT: dict[str, Severity] = {
    "ConnectToGit": "warning",
    "DisconnectFromGit": "warning",
    "CommitToGit": "info",
    "UpdateFromGit": "info",
    "UndoGit": "warning",
    "SwitchBranchInGit": "warning",
    "CreateBranchInGit": "info",
    "InitializeGitConnection": "info",
    "UpdateGitCredentials": "warning",
}

_NOTEBOOKS: dict[str, Severity] = {
    "StartNotebookSession": "info",
    "StopNotebookSession": "info",
    "CancelSparkApplication": "warning",
    "ViewSparkApplication": "info",
    "CreateNotebook": "info",
    "UpdateNotebook": "info",
    "DeleteNotebook": "critical",
    "RunNotebook": "info",
    "CreateEnvironment": "info",
    "PublishEnvironment": "info",
    "DeleteEnvironment": "critical",
    "UpdateSparkSettings": "warning",
}

_DATASCIENCE: dict[str, Severity] = {
    "AddExperimentRun": "info",
    "CreateMLExperiment": "info",
    "DeleteMLExperiment": "critical",
    "CreateMLModel": "info",
    "DeleteModelVersion": "critical",
    "DeployModelVersion": "warning",
    "CopilotInteraction": "info",
    "RequestCopilot": "info",
    "RequestOpenAI": "info",
    "AIFunctionInvocation": "info",
}

_SCORECARDS: dict[str, Severity] = {
    "CreateScorecard": "info",
    "UpdateScorecard": "info",
    "DeleteScorecard": "critical",
    "ViewScorecard": "info",
    "CreateGoal": "info",
    "UpdateGoal": "info",
    "DeleteGoal": "critical",
    "UpdateGoalCurrentValue": "info",
}

_SUBSCRIPTIONS: dict[str, Severity] = {
    "CreateEmailSubscription": "info",
    "UpdateEmailSubscription": "info",
    "DeleteEmailSubscription": "warning",
    "RunEmailSubscription": "info",
    "PostComment": "info",
    "EditComment": "info",
    "DeleteComment": "warning",
    "CreateDataAlert": "info",
    "DeleteDataAlert": "info",
}

_EMBED: dict[str, Severity] = {
    "GenerateEmbedToken": "info",
    "GenerateMultiResourceEmbedToken": "info",
    "PublishToWebReport": "critical",
    "DeleteEmbedCode": "warning",
    "CreateExternalDataShare": "warning",
    "RevokeExternalDataShare": "warning",
    "AcceptExternalDataShare": "warning",
    "ShareWithExternalUser": "warning",
}

_DOMAINS: dict[str, Severity] = {
    "InsertDataDomainAsAdmin": "warning",
    "UpdateDataDomainAsAdmin": "warning",
    "DeleteDataDomainAsAdmin": "critical",
    "AssignWorkspacesToDataDomain": "warning",
    "CreateManagedVNet": "warning",
    "DeleteManagedVNet": "critical",
    "CreateManagedPrivateEndpoint": "warning",
    "DeleteManagedPrivateEndpoint": "critical",
}

_BY_CATEGORY: dict[str, dict[str, Severity]] = {
    "reports": _REPORTS,
    "dashboards": _DASHBOARDS,
    "datasets": _DATASETS,
    "dataflows": _DATAFLOWS,
    "workspaces": _WORKSPACES,
    "pipelines": _PIPELINES,
    "gateways": _GATEWAYS,
    "apps": _APPS,
    "capacity": _CAPACITY,
    "security": _SECURITY,
    "lakehouse": _LAKEHOUSE,
    "warehouse": _WAREHOUSE,
    "onelake": _ONELAKE,
    "git": _GIT,
    "notebooks": _NOTEBOOKS,
    "datascience": _DATASCIENCE,
    "scorecards": _SCORECARDS,
    "subscriptions": _SUBSCRIPTIONS,
    "embed": _EMBED,
    "domains": _DOMAINS,
}


def _flatten(by_category: dict[str, dict[str, Severity]]) -> dict[str, Classification]:
    # Refuse an operation listed under two categories rather than letting dict order pick one.
    table: dict[str, Classification] = {}
    for category, entries in by_category.items():
        for operation, severity in entries.items():
            if operation in table:
                raise ValueError(
                    f"operation {operation!r} listed under both {table[operation].category!r} and {category!r}"
                )
            table[operation] = Classification(category=category, severity=severity)
    return table


OPERATION_TABLE: Mapping[str, Classification] = MappingProxyType(_flatten(_BY_CATEGORY))


# Ordered (substrings, category, severity); the first rule with any substring
# present in the lowercased operation name wins.
FALLBACK_RULES: tuple[tuple[tuple[str, ...], str, Severity], ...] = (
    (("lakehouse",), "lakehouse", "info"),
    (("warehouse", "datamart", "sqlanalytics"), "warehouse", "info"),
    (("notebook", "spark", "environment"), "notebooks", "info"),
    (("git", "branch", "commit"), "git", "info"),
    (("gateway", "datasource"), "gateways", "info"),
    (("pipeline", "alm", "artifact"), "pipelines", "info"),
    (("scorecard", "goal", "metric"), "scorecards", "info"),
    (("report",), "reports", "info"),
    (("dashboard", "tile"), "dashboards", "info"),
    (("dataset", "semantic", "refresh"), "datasets", "info"),
    (("dataflow",), "dataflows", "info"),
    (("workspace", "group", "folder"), "workspaces", "info"),
    (("app", "template"), "apps", "info"),
    (("capacity", "admin", "tenant"), "capacity", "info"),
    (("sensitivity", "dlp", "encrypt"), "security", "warning"),
    (("embed", "external", "share"), "embed", "info"),
    (("domain", "vnet", "private"), "domains", "info"),
    (("subscription", "email", "comment", "note"), "subscriptions", "info"),
    (("copilot", "openai", "experiment", "model"), "datascience", "info"),
    (("blob", "container", "file", "path"), "onelake", "info"),
)
