"""
Operations exposed to the HTTP layer and the CLI.

Import ``driveaudit.services.scan_service.ScanService`` directly; this
package does not re-export it so that the job modules can use
``driveaudit.services.usage`` without an import cycle.
"""
